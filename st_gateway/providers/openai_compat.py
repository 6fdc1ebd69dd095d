from __future__ import annotations

import json
import re
from typing import Any, Union

import httpx

from st_gateway.chat.schemas import UnifiedChatRequest
from st_gateway.core.normalize import flatten_content
from st_gateway.core.settings import GatewaySettings
from st_gateway.core.transport import RetryPolicy, Sleep, post_json_with_retries
from st_gateway.core.types import AssemblyPlan, ProviderResult

from .base import OpenAICompatBranch, OpenRouterBranch, clamp_max_tokens, clamp_temperature

CompatBranch = Union[OpenAICompatBranch, OpenRouterBranch]

GEMINI_SAFETY_SETTINGS: tuple[dict[str, str], ...] = (
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "OFF"},
)

_GEMINI_FAMILY_PATTERN = re.compile(r"google/gemini", re.IGNORECASE)


def build_openai_payload(
    branch: CompatBranch,
    plan: AssemblyPlan,
    request: UnifiedChatRequest,
    settings: GatewaySettings,
) -> tuple[dict[str, Any], int]:
    max_used = clamp_max_tokens(request.max_tokens, settings.openai_compat_max_tokens)
    payload: dict[str, Any] = {
        "model": branch.model,
        "messages": [message.to_dict() for message in plan.messages],
        "max_tokens": max_used,
        "stream": False,
    }

    temperature = clamp_temperature(request.temperature, settings.max_temperature)
    if temperature is not None:
        payload["temperature"] = temperature

    payload.update(request.passthrough())
    if request.tools is not None:
        payload["tools"] = request.tools
    if request.tool_choice is not None:
        payload["tool_choice"] = request.tool_choice

    if isinstance(branch, OpenRouterBranch):
        payload.update(openrouter_extensions(request, branch.model))
    elif request.reasoning_effort:
        payload["reasoning_effort"] = request.reasoning_effort

    return payload, max_used


def openrouter_extensions(request: UnifiedChatRequest, model: str) -> dict[str, Any]:
    extensions: dict[str, Any] = {}

    if request.include_reasoning is not None:
        extensions["include_reasoning"] = request.include_reasoning
    if request.reasoning_effort:
        extensions["reasoning"] = {"effort": request.reasoning_effort}

    transforms = build_transforms(request.middleout)
    if transforms is not None:
        extensions["transforms"] = transforms
    if request.enable_web_search:
        extensions["plugins"] = [{"id": "web"}]

    if request.provider:
        extensions["provider"] = {
            "order": request.provider,
            "allow_fallbacks": True if request.allow_fallbacks is None else request.allow_fallbacks,
        }
    elif request.allow_fallbacks is not None:
        extensions["provider"] = {"allow_fallbacks": request.allow_fallbacks}

    if request.use_fallback:
        extensions["route"] = "fallback"

    if request.json_schema:
        schema = request.json_schema
        strict = schema.get("strict")
        extensions["response_format"] = {
            "type": "json_schema",
            "json_schema": {
                "name": schema.get("name") or "response_schema",
                "strict": True if strict is None else bool(strict),
                "schema": schema.get("value") or {},
            },
        }

    if _GEMINI_FAMILY_PATTERN.search(model):
        extensions["safety_settings"] = [dict(item) for item in GEMINI_SAFETY_SETTINGS]

    return extensions


def build_transforms(mode: str | None) -> list[str] | None:
    value = (mode or "").strip().lower()
    if value == "on":
        return ["middle-out"]
    if value == "off":
        return []
    return None


def build_headers(branch: CompatBranch, settings: GatewaySettings) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if branch.token:
        headers["authorization"] = f"Bearer {branch.token}"
    if isinstance(branch, OpenRouterBranch):
        headers["HTTP-Referer"] = settings.openrouter_referer
        headers["Referer"] = settings.openrouter_referer
        headers["X-Title"] = settings.openrouter_title
    return headers


def aggregate_openai_text(body: Any) -> str:
    """Join the text of every choice, newline-separated, skipping blank ones."""

    if not isinstance(body, dict):
        return ""

    texts: list[str] = []
    choices = body.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            message = choice.get("message")
            text = ""
            if isinstance(message, dict):
                text = flatten_content(message.get("content"), scrub=False)
            if not text and isinstance(choice.get("text"), str):
                text = choice["text"].strip()
            if text:
                texts.append(text)

    return "\n".join(texts).strip()


async def call_openai_compat(
    branch: CompatBranch,
    payload: dict[str, Any],
    settings: GatewaySettings,
    *,
    client: httpx.AsyncClient,
    policy: RetryPolicy,
    sleep: Sleep,
) -> ProviderResult:
    result = await post_json_with_retries(
        client,
        branch.endpoint,
        payload,
        headers=build_headers(branch, settings),
        policy=policy,
        sleep=sleep,
    )
    if not result.ok:
        return result

    try:
        body = json.loads(result.text)
    except (TypeError, ValueError):
        body = None

    return ProviderResult(
        ok=True,
        status=result.status,
        text=aggregate_openai_text(body),
        attempts=result.attempts,
    )
