from __future__ import annotations

import json
import time
import uuid
from typing import Any, AsyncIterator, Literal

from st_gateway.core.token_estimation import estimate_tokens
from st_gateway.core.types import InjectionFlags

StreamShape = Literal["openai", "gemini"]


def reply_or_echo(text: str, echo_text: str, *, is_zh: bool) -> str:
    """Return ``text`` or, when it is blank, a marked echo of the user text."""

    reply = (text or "").strip()
    if reply:
        return reply

    echo = (echo_text or "").strip()
    if is_zh:
        return f"（空白回复，已回显）你说：{echo}" if echo else "（空回复）"
    return f"(blank reply, echoed) You said: {echo}" if echo else "(empty reply)"


def chunk_text(text: str, size: int) -> list[str]:
    size = max(1, size)
    chunks = [text[index : index + size] for index in range(0, len(text), size)]
    return chunks or [""]


def completion_payload(reply: str, model: str, prompt_tokens: int) -> dict[str, Any]:
    completion_tokens = estimate_tokens(reply)
    return {
        "id": new_chat_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": reply,
                },
                "finish_reason": "stop",
            }
        ],
        "usage": usage_payload(prompt_tokens, completion_tokens),
    }


async def stream_events(
    reply: str,
    model: str,
    *,
    shape: StreamShape,
    chunk_chars: int,
) -> AsyncIterator[bytes]:
    """Re-emit an already aggregated reply as SSE chunks ending with ``[DONE]``."""

    completion_id = new_chat_completion_id()
    created_at = int(time.time())

    for part in chunk_text(reply, chunk_chars):
        if shape == "gemini":
            yield sse_data({"candidates": [{"content": {"parts": [{"text": part}]}}]})
            continue

        chunk = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created_at,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": {"content": part},
                    "finish_reason": None,
                }
            ],
        }
        yield sse_data(chunk)

    if shape == "openai":
        final_chunk = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created_at,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": {},
                    "finish_reason": "stop",
                }
            ],
        }
        yield sse_data(final_chunk)

    yield b"data: [DONE]\n\n"


def diagnostic_headers(
    *,
    request_id: str,
    branch: str,
    proxy_target: str,
    auth_source: str,
    flags: InjectionFlags,
    anchor_source: str,
    last_input_used: bool,
    max_tokens_used: int | None,
    fallback: str | None,
) -> dict[str, str]:
    headers = {
        "x-st-request-id": request_id,
        "x-st-llm-branch": branch,
        "x-st-proxy-target": proxy_target,
        "x-st-auth-source": auth_source,
        "x-st-lang-injected": _flag(flags.lang),
        "x-st-card-injected": _flag(flags.card),
        "x-st-world-injected": _flag(flags.world),
        "x-st-roleplay-enforcer": _flag(flags.roleplay),
        "x-st-user-priority": _flag(flags.user_priority),
        "x-st-intent-rule": flags.intent_rule,
        "x-st-intent-anchored": _flag(flags.anchored),
        "x-st-hard-append": _flag(flags.hard_append),
        "x-st-user-injected": _flag(flags.user_injected),
        "x-st-last-input-used": _flag(last_input_used),
        "x-st-anchor-source": anchor_source,
    }
    if max_tokens_used is not None:
        headers["x-st-max-tokens-used"] = str(max_tokens_used)
    if fallback:
        headers["x-st-fallback"] = fallback
    return headers


def usage_payload(prompt_tokens: int, completion_tokens: int) -> dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def new_chat_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def sse_data(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _flag(value: bool) -> str:
    return "1" if value else "0"
