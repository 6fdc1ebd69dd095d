from __future__ import annotations

import re
from typing import Sequence
from urllib.parse import unquote

from .math_eval import NUMERIC_ONLY_MARKER, isolate_expression
from .types import Anchor, CanonicalMessage

_MATH_QUESTION_PATTERN = re.compile(r"[=＝]\s*[?？]\s*$")

_STORY_PATTERN = re.compile(
    r"剧情推进|继续剧情|推进剧情|采取行动|继续(?!\S)|继续下去|继续写|接着|推动剧情|推进"
    r"|展开(?:剧情|故事)?|下一步|采取(?:行动|下一步)"
    r"|\bcontinue\s+(?:the\s+)?(?:story|scene|plot)\b|\badvance\s+the\s+(?:plot|story|scene)\b"
    r"|\bmove\s+the\s+(?:plot|story)\s+forward\b|\bwhat\s+happens\s+next\b"
    r"|\btake\s+(?:an\s+)?action\b|\bnext\s+step\b|^\s*(?:continue|go\s+on|keep\s+going)\s*[.!…]*\s*$",
    re.IGNORECASE,
)


def is_math_intent(text: str | None) -> bool:
    if not text:
        return False
    if NUMERIC_ONLY_MARKER.search(text) or _MATH_QUESTION_PATTERN.search(text):
        return True
    return isolate_expression(text) is not None


def is_story_intent(text: str | None) -> bool:
    if not text:
        return False
    return bool(_STORY_PATTERN.search(text))


def decode_hint(raw: str | None) -> str:
    """Decode the URL-encoded last-input hint header sent by the browser shim."""

    if not raw:
        return ""
    return unquote(raw).strip()


def last_user_text(messages: Sequence[CanonicalMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user" and message.text:
            return message.text
    return ""


def resolve_anchor(messages: Sequence[CanonicalMessage], hint: str = "") -> Anchor:
    """Pick the freshest utterance to steer the model with.

    Preference: last non-empty user turn, then last non-empty turn of any
    role, then the out-of-band hint.
    """

    user_text = last_user_text(messages)
    if user_text:
        return Anchor(text=user_text, source="user")

    for message in reversed(messages):
        if message.text:
            return Anchor(text=message.text, source="last-any")

    if hint:
        return Anchor(text=hint, source="header")

    return Anchor(text="", source="none")
