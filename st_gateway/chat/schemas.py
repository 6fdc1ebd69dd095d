from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

PASSTHROUGH_KEYS = (
    "top_p",
    "top_k",
    "presence_penalty",
    "frequency_penalty",
    "repetition_penalty",
    "min_p",
    "top_a",
    "seed",
    "logit_bias",
    "stop",
    "n",
    "logprobs",
    "top_logprobs",
)


class UnifiedChatRequest(BaseModel):
    """Inbound chat-completion request as sent by the chat web application.

    Every field is optional and loosely typed: values of the wrong type are
    coerced to a neutral default instead of failing validation.
    """

    messages: list[Any] = Field(default_factory=list)
    model: str = "stub"
    chat_completion_source: str = Field(
        default="",
        validation_alias=AliasChoices("chat_completion_source", "source"),
    )
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None

    char_name: str = ""
    user_name: str = ""

    custom_url: str = ""
    reverse_proxy: str = ""
    proxy_password: str = ""

    strict_latest_only: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("strict_latest_only", "strictLatestOnly"),
    )

    # OpenAI-compatible and OpenRouter extensions
    tools: list[Any] | None = None
    tool_choice: Any = None
    reasoning_effort: str | None = None
    include_reasoning: bool | None = None
    middleout: str | None = None
    enable_web_search: bool = False
    provider: list[str] | None = None
    allow_fallbacks: bool | None = None
    use_fallback: bool = False
    json_schema: dict[str, Any] | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("messages", mode="before")
    @classmethod
    def _coerce_messages(cls, value: Any) -> list[Any]:
        return list(value) if isinstance(value, (list, tuple)) else []

    @field_validator("model", mode="before")
    @classmethod
    def _coerce_model(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or "stub"

    @field_validator(
        "chat_completion_source",
        "char_name",
        "user_name",
        "custom_url",
        "reverse_proxy",
        "proxy_password",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None or isinstance(value, (dict, list)):
            return ""
        return str(value).strip()

    @field_validator("stream", "enable_web_search", "use_fallback", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_bool(value) or False

    @field_validator("strict_latest_only", "include_reasoning", "allow_fallbacks", mode="before")
    @classmethod
    def _coerce_optional_flag(cls, value: Any) -> bool | None:
        return _as_bool(value)

    @field_validator("temperature", mode="before")
    @classmethod
    def _coerce_temperature(cls, value: Any) -> float | None:
        return _as_number(value)

    @field_validator("max_tokens", mode="before")
    @classmethod
    def _coerce_max_tokens(cls, value: Any) -> int | None:
        number = _as_number(value)
        return int(number) if number is not None else None

    @field_validator("tools", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[Any] | None:
        return list(value) if isinstance(value, (list, tuple)) else None

    @field_validator("provider", mode="before")
    @classmethod
    def _coerce_provider_order(cls, value: Any) -> list[str] | None:
        if not isinstance(value, (list, tuple)):
            return None
        return [str(item) for item in value if item is not None]

    @field_validator("json_schema", mode="before")
    @classmethod
    def _coerce_schema(cls, value: Any) -> dict[str, Any] | None:
        return value if isinstance(value, dict) else None

    @field_validator("reasoning_effort", "middleout", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> str | None:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value)

    @property
    def source(self) -> str:
        return self.chat_completion_source.lower()

    def passthrough(self) -> dict[str, Any]:
        extra = self.model_extra or {}
        return {key: extra[key] for key in PASSTHROUGH_KEYS if extra.get(key) is not None}


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    return None


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number
