"""Request pipeline for the unified chat-completions endpoint.

normalize -> select branch -> assemble prompt -> math short-circuit ->
provider call -> aggregate reply. The upstream is always called in
single-shot mode; streaming callers get the aggregated reply re-chunked, so
every error is known before the first byte is written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator

from st_gateway.core.errors import UpstreamFailure
from st_gateway.core.intent import last_user_text
from st_gateway.core.math_eval import try_eval_math
from st_gateway.core.normalize import flatten_content, normalize_messages
from st_gateway.core.prompt import PromptInputs, build_assembly_plan
from st_gateway.core.secrets import GUEST_USER_ID
from st_gateway.core.settings import GatewaySettings
from st_gateway.core.stores import GatewayStore
from st_gateway.core.token_estimation import estimate_prompt_tokens
from st_gateway.core.transport import ClientFactory, RetryPolicy, Sleep
from st_gateway.core.types import AssemblyPlan, ProviderResult
from st_gateway.providers.base import (
    DemoBranch,
    GeminiBranch,
    OpenAICompatBranch,
    OpenRouterBranch,
    ProviderBranch,
    select_branch,
)
from st_gateway.providers.demo import demo_reply
from st_gateway.providers.gemini import build_gemini_payload, call_gemini
from st_gateway.providers.openai_compat import build_openai_payload, call_openai_compat

from .errors import map_generation_error
from .formatting import (
    StreamShape,
    completion_payload,
    diagnostic_headers,
    reply_or_echo,
    stream_events,
)
from .schemas import UnifiedChatRequest

logger = logging.getLogger(__name__)

MATH_BRANCH_LABEL = "math-local"

_PROXY_TARGETS = {
    "gemini": "gemini",
    "openai-compat": "compat",
    "openrouter": "openrouter",
    "demo": "none",
}


@dataclass(slots=True)
class RequestContext:
    settings: GatewaySettings
    store: GatewayStore
    client_factory: ClientFactory
    sleep: Sleep
    request_id: str
    user_id: str | None = None
    locale: str = ""
    hint: str = ""

    @property
    def is_zh(self) -> bool:
        return self.locale.strip().lower().startswith("zh")


@dataclass(slots=True)
class ChatOutcome:
    reply: str
    model: str
    shape: StreamShape
    prompt_tokens: int
    headers: dict[str, str]


@dataclass(slots=True)
class _Resolution:
    reply: str
    branch_label: str
    max_tokens_used: int | None = None
    fallback: str | None = None


async def create_chat_completion(
    request: UnifiedChatRequest,
    context: RequestContext,
) -> tuple[dict[str, Any], dict[str, str]]:
    outcome = await _generate(request, context)
    payload = completion_payload(outcome.reply, outcome.model, outcome.prompt_tokens)
    return payload, outcome.headers


async def create_chat_completion_stream(
    request: UnifiedChatRequest,
    context: RequestContext,
) -> tuple[AsyncIterator[bytes], dict[str, str]]:
    outcome = await _generate(request, context)
    iterator = stream_events(
        outcome.reply,
        outcome.model,
        shape=outcome.shape,
        chunk_chars=context.settings.stream_chunk_chars,
    )
    return iterator, outcome.headers


async def _generate(request: UnifiedChatRequest, context: RequestContext) -> ChatOutcome:
    try:
        return await run_pipeline(request, context)
    except UpstreamFailure as exc:
        raise map_generation_error(exc, context.request_id) from exc
    except Exception as exc:
        logger.exception("Request %s failed during generation", context.request_id)
        raise map_generation_error(exc, context.request_id) from exc


async def run_pipeline(request: UnifiedChatRequest, context: RequestContext) -> ChatOutcome:
    settings = context.settings
    if request.strict_latest_only is not None:
        settings = replace(settings, strict_latest_only=request.strict_latest_only)

    messages = normalize_messages(request.messages, scrub=settings.scrub_meta_prompts)
    branch = select_branch(request, settings, context.store, context.user_id)
    logger.info(
        "Request %s routed to %s (source=%r, model=%r, stream=%s)",
        context.request_id,
        branch.label,
        request.source,
        request.model,
        request.stream,
    )

    inputs = PromptInputs(
        messages=messages,
        locale=context.locale,
        hint=context.hint,
        char_name=request.char_name,
        user_name=request.user_name,
        user_id=context.user_id or GUEST_USER_ID,
        preserve_structure=(
            settings.preserve_message_structure
            and isinstance(branch, (OpenAICompatBranch, OpenRouterBranch))
        ),
        characters=context.store,
        world_info=context.store,
    )
    plan = build_assembly_plan(inputs, settings)

    resolution = await _resolve_reply(branch, plan, request, settings, context)

    headers = diagnostic_headers(
        request_id=context.request_id,
        branch=resolution.branch_label,
        proxy_target=_proxy_target(branch),
        auth_source="user" if context.user_id else "guest",
        flags=plan.flags,
        anchor_source=plan.anchor.source,
        last_input_used=bool(context.hint) and not last_user_text(messages),
        max_tokens_used=resolution.max_tokens_used,
        fallback=resolution.fallback,
    )

    return ChatOutcome(
        reply=resolution.reply,
        model=request.model,
        shape="gemini" if request.source == "makersuite" else "openai",
        prompt_tokens=estimate_prompt_tokens(
            flatten_content(message.content, scrub=False) for message in plan.messages
        ),
        headers=headers,
    )


async def _resolve_reply(
    branch: ProviderBranch,
    plan: AssemblyPlan,
    request: UnifiedChatRequest,
    settings: GatewaySettings,
    context: RequestContext,
) -> _Resolution:
    math_enabled = settings.intent_rule_math and plan.math_intent
    echo_text = plan.freshest_user_text or plan.anchor.text

    if math_enabled:
        evaluated = _local_arithmetic(plan)
        if evaluated is not None:
            logger.info("Request %s answered by local arithmetic", context.request_id)
            return _Resolution(reply=evaluated, branch_label=MATH_BRANCH_LABEL)

    if isinstance(branch, DemoBranch):
        return _Resolution(
            reply=demo_reply(branch, echo_text, is_zh=context.is_zh),
            branch_label=branch.label,
            fallback=branch.reason,
        )

    policy = RetryPolicy.from_settings(settings)
    timeout = max(1, settings.upstream_timeout_ms) / 1000.0

    async with context.client_factory(timeout) as client:
        if isinstance(branch, GeminiBranch):
            payload, max_used = build_gemini_payload(
                plan,
                settings,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
            result = await call_gemini(
                branch, payload, client=client, policy=policy, sleep=context.sleep
            )
        else:
            payload, max_used = build_openai_payload(branch, plan, request, settings)
            result = await call_openai_compat(
                branch, payload, settings, client=client, policy=policy, sleep=context.sleep
            )

    if not result.ok:
        return _resolve_failure(branch, plan, result, math_enabled, max_used, context)

    return _Resolution(
        reply=reply_or_echo(result.text, echo_text, is_zh=context.is_zh),
        branch_label=branch.label,
        max_tokens_used=max_used,
    )


def _resolve_failure(
    branch: ProviderBranch,
    plan: AssemblyPlan,
    result: ProviderResult,
    math_enabled: bool,
    max_used: int,
    context: RequestContext,
) -> _Resolution:
    if math_enabled:
        evaluated = try_eval_math(plan.anchor.text, lenient=True)
        if evaluated is not None:
            logger.info(
                "Request %s: %s failed with status %d, answered by local arithmetic",
                context.request_id,
                branch.label,
                result.status,
            )
            return _Resolution(
                reply=evaluated,
                branch_label=MATH_BRANCH_LABEL,
                max_tokens_used=max_used,
                fallback="upstream-error",
            )

    raise UpstreamFailure(
        provider=branch.label,
        upstream_status=result.status,
        message=result.error_text,
    )


def _local_arithmetic(plan: AssemblyPlan) -> str | None:
    for text in dict.fromkeys((plan.freshest_user_text, plan.anchor.text)):
        evaluated = try_eval_math(text)
        if evaluated is not None:
            return evaluated
    return None


def _proxy_target(branch: ProviderBranch) -> str:
    kind = branch.origin if isinstance(branch, DemoBranch) else branch.kind
    return _PROXY_TARGETS.get(kind, "none")
