from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]
ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})

IntentKind = Literal["math", "story", "none"]


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    role: Role
    text: str
    raw_content: Any = None


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    role: Role
    content: Any

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class Anchor:
    text: str
    source: Literal["user", "last-any", "header", "none"]


@dataclass(slots=True)
class InjectionFlags:
    lang: bool = False
    card: bool = False
    world: bool = False
    roleplay: bool = False
    user_priority: bool = False
    intent_rule: IntentKind = "none"
    anchored: bool = False
    hard_append: bool = False
    user_injected: bool = False


@dataclass(frozen=True, slots=True)
class AssemblyPlan:
    fragments: tuple[str, ...]
    messages: tuple[OutgoingMessage, ...]
    anchor: Anchor
    freshest_user_text: str
    math_intent: bool
    strict_latest: bool
    flags: InjectionFlags = field(default_factory=InjectionFlags)


@dataclass(frozen=True, slots=True)
class ProviderResult:
    ok: bool
    status: int
    text: str = ""
    error_text: str = ""
    attempts: int = 1
