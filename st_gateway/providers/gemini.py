from __future__ import annotations

import json
from typing import Any

import httpx

from st_gateway.core.normalize import flatten_content
from st_gateway.core.settings import GatewaySettings
from st_gateway.core.transport import RetryPolicy, Sleep, post_json_with_retries
from st_gateway.core.types import AssemblyPlan, ProviderResult

from .base import GeminiBranch, clamp_max_tokens, clamp_temperature

_ROLE_MAP = {"user": "user", "assistant": "model"}


def build_gemini_payload(
    plan: AssemblyPlan,
    settings: GatewaySettings,
    *,
    max_tokens: int | None,
    temperature: float | None,
) -> tuple[dict[str, Any], int]:
    """Convert an assembly plan to a ``generateContent`` body.

    Returns the payload and the effective ``maxOutputTokens``.
    """

    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []

    for message in plan.messages:
        text = flatten_content(message.content, scrub=False)
        if message.role == "system":
            if text:
                system_parts.append(text)
            continue
        if not text:
            continue
        contents.append({"role": _ROLE_MAP[message.role], "parts": [{"text": text}]})

    if not contents:
        # generateContent rejects requests without at least one turn.
        fallback = plan.anchor.text or plan.freshest_user_text or "..."
        contents.append({"role": "user", "parts": [{"text": fallback}]})

    max_used = clamp_max_tokens(max_tokens, settings.gemini_max_output_tokens)
    generation_config: dict[str, Any] = {"maxOutputTokens": max_used}
    clamped_temperature = clamp_temperature(temperature, settings.max_temperature)
    if clamped_temperature is not None:
        generation_config["temperature"] = clamped_temperature

    payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
    system_instruction = "\n".join(system_parts)
    if system_instruction:
        payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

    return payload, max_used


def aggregate_gemini_text(body: Any) -> str:
    """Join the text of every part of every candidate.

    Parts of one candidate are concatenated; candidates are separated by a
    newline. Blank candidates are skipped.
    """

    if not isinstance(body, dict):
        return ""

    candidate_texts: list[str] = []
    candidates = body.get("candidates")
    if isinstance(candidates, list):
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                continue
            text = "".join(
                part["text"]
                for part in parts
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
            if text:
                candidate_texts.append(text)

    joined = "\n".join(candidate_texts).strip()
    if joined:
        return joined

    output_text = body.get("output_text")
    if isinstance(output_text, str):
        return output_text.strip()
    return ""


async def call_gemini(
    branch: GeminiBranch,
    payload: dict[str, Any],
    *,
    client: httpx.AsyncClient,
    policy: RetryPolicy,
    sleep: Sleep,
) -> ProviderResult:
    result = await post_json_with_retries(
        client,
        branch.endpoint,
        payload,
        headers={"content-type": "application/json", "x-goog-api-key": branch.api_key},
        policy=policy,
        sleep=sleep,
    )
    if not result.ok:
        return result

    return ProviderResult(
        ok=True,
        status=result.status,
        text=aggregate_gemini_text(_parse_json(result.text)),
        attempts=result.attempts,
    )


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None
