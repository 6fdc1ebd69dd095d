"""Flatten lax chat payloads into canonical role/text messages."""

from __future__ import annotations

import re
from typing import Any

from .types import ROLES, CanonicalMessage

_META_PROMPT_PATTERN = re.compile(
    r"\[(?:Start a new Chat|Start a new group chat\.|Example Chat"
    r"|Continue your last message[^\]]*|Write the next reply[^\]]*)\]",
    re.IGNORECASE,
)
_BRACKET_LINE_PATTERN = re.compile(r"^[ \t]*\[[^\n]*?\][ \t]*$", re.MULTILINE)
_INLINE_SPACE_PATTERN = re.compile(r"[ \t\f\v\u00a0\u3000]+")
_BLANK_RUN_PATTERN = re.compile(r"\n{3,}")


def flatten_content(content: Any, *, scrub: bool = True) -> str:
    """Return the canonical text of a message content value.

    Strings, lists of parts and single part objects are accepted; anything
    else yields an empty string. Applying the function to its own output is
    a no-op.
    """

    return canonical_text(_raw_text(content), scrub=scrub)


def canonical_text(text: str, *, scrub: bool = True) -> str:
    text = _normalize_whitespace(text)
    if not scrub:
        return text

    # Removing one placeholder can expose another, so scrub to a fixed point.
    while True:
        scrubbed = _BRACKET_LINE_PATTERN.sub("", _META_PROMPT_PATTERN.sub("", text))
        scrubbed = _normalize_whitespace(scrubbed)
        if scrubbed == text:
            return text
        text = scrubbed


def normalize_role(role: Any) -> str | None:
    if not isinstance(role, str):
        return None
    lowered = role.strip().lower()
    return lowered if lowered in ROLES else None


def normalize_messages(raw_messages: Any, *, scrub: bool = True) -> list[CanonicalMessage]:
    if not isinstance(raw_messages, (list, tuple)):
        return []

    normalized: list[CanonicalMessage] = []
    for raw in raw_messages:
        if not isinstance(raw, dict):
            continue

        role = normalize_role(raw.get("role"))
        if role is None:
            continue

        content = raw.get("content")
        normalized.append(
            CanonicalMessage(
                role=role,  # type: ignore[arg-type]
                text=flatten_content(content, scrub=scrub),
                raw_content=content,
            )
        )

    return normalized


def _raw_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        return "".join(_part_text(part) for part in content)
    if isinstance(content, dict):
        return _part_text(content)
    return ""


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return ""

    for key in ("text", "content"):
        value = part.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return ""


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_SPACE_PATTERN.sub(" ", line).strip() for line in text.split("\n")]
    return _BLANK_RUN_PATTERN.sub("\n\n", "\n".join(lines)).strip()
