"""Provider branch selection.

A request is resolved exactly once into one of four branch values. The
networked branches need a credential (and, for the OpenAI-compatible family,
a base URL); when either is missing the resolution step yields an explicit
``MissingPrecondition`` which selection turns into a ``DemoBranch``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Union
from urllib.parse import quote

from st_gateway.chat.schemas import UnifiedChatRequest
from st_gateway.core.secrets import credential_key_for, resolve_secret
from st_gateway.core.settings import DEFAULT_OPENAI_BASE_URL, GatewaySettings
from st_gateway.core.stores import SecretStore

logger = logging.getLogger(__name__)

BranchKind = Literal["gemini", "openai-compat", "openrouter", "demo"]

_GEMINI_MODEL_PATTERN = re.compile(r"^gemini", re.IGNORECASE)
_OPENAI_COMPAT_SOURCES = frozenset({"openai", "custom", "generic"})


@dataclass(frozen=True, slots=True)
class GeminiBranch:
    model: str
    endpoint: str
    api_key: str
    kind: Literal["gemini"] = "gemini"

    @property
    def label(self) -> str:
        return "gemini"


@dataclass(frozen=True, slots=True)
class OpenAICompatBranch:
    source: str
    model: str
    endpoint: str
    token: str
    kind: Literal["openai-compat"] = "openai-compat"

    @property
    def label(self) -> str:
        return "openai-compat"


@dataclass(frozen=True, slots=True)
class OpenRouterBranch:
    model: str
    endpoint: str
    token: str
    kind: Literal["openrouter"] = "openrouter"

    @property
    def label(self) -> str:
        return "openrouter"


@dataclass(frozen=True, slots=True)
class DemoBranch:
    origin: BranchKind = "demo"
    reason: str | None = None
    kind: Literal["demo"] = "demo"

    @property
    def label(self) -> str:
        return "demo" if self.origin == "demo" else f"{self.origin}-fallback"


ProviderBranch = Union[GeminiBranch, OpenAICompatBranch, OpenRouterBranch, DemoBranch]


@dataclass(frozen=True, slots=True)
class ResolvedEndpoint:
    credential: str
    base_url: str = ""


@dataclass(frozen=True, slots=True)
class MissingPrecondition:
    reason: Literal["missing-credential", "missing-base-url"]


EndpointResolution = Union[ResolvedEndpoint, MissingPrecondition]


def detect_branch_kind(source: str, model: str) -> BranchKind:
    if source == "makersuite" or _GEMINI_MODEL_PATTERN.match(model or ""):
        return "gemini"
    if source == "openrouter":
        return "openrouter"
    if source in _OPENAI_COMPAT_SOURCES:
        return "openai-compat"
    return "demo"


def resolve_endpoint(
    kind: BranchKind,
    request: UnifiedChatRequest,
    settings: GatewaySettings,
    secrets: SecretStore,
    user_id: str | None,
) -> EndpointResolution:
    if kind == "gemini":
        api_key = resolve_secret(secrets, settings, user_id, credential_key_for("gemini"))
        if not api_key:
            return MissingPrecondition(reason="missing-credential")
        return ResolvedEndpoint(credential=api_key, base_url=settings.gemini_base_url)

    source = request.source
    if kind == "openrouter":
        base = request.reverse_proxy or request.custom_url or settings.openrouter_base_url
        key_source = "openrouter"
    else:
        base = request.custom_url or request.reverse_proxy or settings.openai_compat_base
        if not base and source == "openai":
            base = DEFAULT_OPENAI_BASE_URL
        key_source = "openai" if source == "openai" else "custom"

    base = base.rstrip("/")
    if not base:
        return MissingPrecondition(reason="missing-base-url")

    token = request.proxy_password or resolve_secret(
        secrets, settings, user_id, credential_key_for(key_source)
    )
    if not token:
        return MissingPrecondition(reason="missing-credential")

    return ResolvedEndpoint(credential=token, base_url=base)


def select_branch(
    request: UnifiedChatRequest,
    settings: GatewaySettings,
    secrets: SecretStore,
    user_id: str | None,
) -> ProviderBranch:
    kind = detect_branch_kind(request.source, request.model)
    if kind == "demo":
        return DemoBranch()

    resolution = resolve_endpoint(kind, request, settings, secrets, user_id)
    if isinstance(resolution, MissingPrecondition):
        logger.info("Branch %s degraded to demo reply (%s)", kind, resolution.reason)
        return DemoBranch(origin=kind, reason=resolution.reason)

    if kind == "gemini":
        return GeminiBranch(
            model=request.model,
            endpoint=f"{resolution.base_url}/models/{quote(request.model, safe='')}:generateContent",
            api_key=resolution.credential,
        )

    if kind == "openrouter":
        return OpenRouterBranch(
            model=request.model,
            endpoint=f"{resolution.base_url}/chat/completions",
            token=resolution.credential,
        )

    return OpenAICompatBranch(
        source=request.source,
        model=request.model,
        endpoint=_chat_completions_url(resolution.base_url),
        token=resolution.credential,
    )


def clamp_max_tokens(requested: int | None, ceiling: int) -> int:
    if requested is not None and requested > 0:
        return min(requested, ceiling)
    return ceiling


def clamp_temperature(value: float | None, ceiling: float) -> float | None:
    if value is None:
        return None
    return min(max(value, 0.0), ceiling)


def _chat_completions_url(base_url: str) -> str:
    if base_url.endswith("/v1"):
        return f"{base_url}/chat/completions"
    return f"{base_url}/v1/chat/completions"
