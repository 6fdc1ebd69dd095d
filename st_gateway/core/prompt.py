"""System-instruction composition and outgoing turn selection.

Fragments are emitted in a fixed precedence regardless of the order things
appear in the request, so identical inputs always produce identical prompts:

1. system text carried in the request
2. language directive
3. character card brief
4. world info brief
5. roleplay enforcer
6. user-priority directive
7. intent rules (math, story)
8. intent anchor
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from .intent import is_math_intent, is_story_intent, last_user_text, resolve_anchor
from .normalize import flatten_content
from .settings import GatewaySettings
from .stores import CharacterStore, WorldInfoStore
from .types import AssemblyPlan, CanonicalMessage, InjectionFlags, OutgoingMessage

logger = logging.getLogger(__name__)

MIN_ANCHOR_CLAMP = 40
MIN_WORLD_CLAMP = 200


@dataclass(frozen=True, slots=True)
class PromptInputs:
    messages: Sequence[CanonicalMessage]
    locale: str = ""
    hint: str = ""
    char_name: str = ""
    user_name: str = ""
    user_id: str | None = None
    preserve_structure: bool = False
    characters: CharacterStore | None = field(default=None, compare=False)
    world_info: WorldInfoStore | None = field(default=None, compare=False)

    @property
    def is_zh(self) -> bool:
        return self.locale.strip().lower().startswith("zh")


def build_assembly_plan(inputs: PromptInputs, settings: GatewaySettings) -> AssemblyPlan:
    messages = list(inputs.messages)
    zh = inputs.is_zh

    user_text = last_user_text(messages)
    freshest = user_text or inputs.hint
    anchor = resolve_anchor(messages, inputs.hint)
    math_intent = is_math_intent(freshest) or is_math_intent(anchor.text)
    story_intent = is_story_intent(freshest) or is_story_intent(anchor.text)

    flags = InjectionFlags()

    if settings.strict_latest_only:
        collapsed = OutgoingMessage(role="user", content=anchor.text)
        return AssemblyPlan(
            fragments=(),
            messages=(collapsed,),
            anchor=anchor,
            freshest_user_text=freshest,
            math_intent=math_intent,
            strict_latest=True,
            flags=flags,
        )

    if inputs.preserve_structure:
        preserved = [
            OutgoingMessage(role=message.role, content=message.raw_content)
            for message in messages
        ]
        preserved = _ensure_freshest(preserved, freshest, flags)
        return AssemblyPlan(
            fragments=(),
            messages=tuple(preserved),
            anchor=anchor,
            freshest_user_text=freshest,
            math_intent=math_intent,
            strict_latest=False,
            flags=flags,
        )

    fragments: list[str] = []
    drop_persona = settings.strict_latest_drop_persona

    system_text = "\n".join(
        message.text for message in messages if message.role == "system" and message.text
    )
    if system_text and not drop_persona:
        fragments.append(system_text)

    if settings.inject_chinese_on_zh and zh and settings.chinese_instruction_text:
        fragments.append(settings.chinese_instruction_text)
        flags.lang = True

    if not drop_persona:
        card_brief = _character_brief(inputs, settings, zh)
        if card_brief:
            fragments.append(card_brief)
            flags.card = True

        world_brief = _world_brief(inputs, settings, zh)
        if world_brief:
            fragments.append(world_brief)
            flags.world = True

        if settings.roleplay_enforcer and (inputs.char_name or inputs.user_name):
            template = settings.roleplay_instruction_zh if zh else settings.roleplay_instruction_en
            enforcer = template.replace(
                "{char}", inputs.char_name or ("角色" if zh else "the character")
            ).replace("{user}", inputs.user_name or ("用户" if zh else "the user"))
            if enforcer.strip():
                fragments.append(enforcer)
                flags.roleplay = True

    if settings.force_user_priority:
        priority = settings.user_priority_text_zh if zh else settings.user_priority_text_en
        if priority.strip():
            fragments.append(priority)
            flags.user_priority = True

    if settings.intent_rule_math and math_intent:
        rule = settings.intent_rule_math_text_zh if zh else settings.intent_rule_math_text_en
        if rule.strip():
            fragments.append(rule)
            flags.intent_rule = "math"

    if settings.intent_rule_story and story_intent:
        rule = settings.intent_rule_story_text_zh if zh else settings.intent_rule_story_text_en
        if rule.strip():
            fragments.append(rule)
            if flags.intent_rule == "none":
                flags.intent_rule = "story"

    anchor_brief = _clamp(anchor.text, max(MIN_ANCHOR_CLAMP, settings.intent_anchor_clamp))
    if settings.intent_anchor and anchor.text and not math_intent:
        template = settings.intent_anchor_text_zh if zh else settings.intent_anchor_text_en
        directive = template.replace("{lastUser}", anchor_brief)
        if directive.strip():
            fragments.append(directive)
            flags.anchored = True

    outgoing: list[OutgoingMessage] = []
    instruction = "\n".join(fragment for fragment in fragments if fragment)
    if instruction:
        outgoing.append(OutgoingMessage(role="system", content=instruction))
    outgoing.extend(history_window(messages, settings.chat_history_turns))
    outgoing = _ensure_freshest(outgoing, freshest, flags)

    if settings.hard_intent_append and anchor.text and not math_intent:
        suffix = settings.hard_intent_suffix_zh if zh else settings.hard_intent_suffix_en
        outgoing.append(OutgoingMessage(role="user", content=f"{anchor_brief}{suffix}"))
        flags.hard_append = True

    logger.debug(
        "Assembled %d system fragments and %d outgoing turns", len(fragments), len(outgoing)
    )

    return AssemblyPlan(
        fragments=tuple(fragments),
        messages=tuple(outgoing),
        anchor=anchor,
        freshest_user_text=freshest,
        math_intent=math_intent,
        strict_latest=False,
        flags=flags,
    )


def history_window(messages: Sequence[CanonicalMessage], turns: int) -> list[OutgoingMessage]:
    keep = max(2, turns * 2)
    dialogue = [message for message in messages if message.role in ("user", "assistant")]
    return [
        OutgoingMessage(role=message.role, content=message.text)
        for message in dialogue[-keep:]
        if message.text
    ]


def _ensure_freshest(
    outgoing: list[OutgoingMessage],
    freshest: str,
    flags: InjectionFlags,
) -> list[OutgoingMessage]:
    """Append the freshest user text unless it already is the most recent user turn."""

    wanted = freshest.strip()
    if not wanted:
        return outgoing

    for message in reversed(outgoing):
        if message.role != "user":
            continue
        if flatten_content(message.content, scrub=False).strip() == wanted:
            return outgoing
        break

    flags.user_injected = True
    return [*outgoing, OutgoingMessage(role="user", content=freshest)]


def _character_brief(inputs: PromptInputs, settings: GatewaySettings, zh: bool) -> str:
    if not (settings.use_character_card and inputs.char_name and inputs.user_id):
        return ""
    if inputs.characters is None:
        return ""

    try:
        card = inputs.characters.find_by_name(inputs.user_id, inputs.char_name)
    except Exception as exc:
        logger.warning("Character lookup failed for %r: %s", inputs.char_name, exc)
        return ""
    if card is None:
        return ""

    template = settings.card_template_zh if zh else settings.card_template_en
    brief = (
        template.replace("{name}", card.name)
        .replace("{description}", card.description)
        .replace("{personality}", card.personality)
        .replace("{scenario}", card.scenario)
        .replace("{first_mes}", card.opening_line)
    )
    return _clamp(brief, settings.persona_clamp_chars) if brief.strip() else ""


def _world_brief(inputs: PromptInputs, settings: GatewaySettings, zh: bool) -> str:
    if not (settings.use_world_info and inputs.user_id):
        return ""
    if inputs.world_info is None:
        return ""

    try:
        entries = inputs.world_info.list(inputs.user_id)
    except Exception as exc:
        logger.warning("World info lookup failed: %s", exc)
        return ""

    picked = list(entries or [])[: max(1, settings.world_items)]
    if not picked:
        return ""
    bullet = settings.world_item_bullet_zh if zh else settings.world_item_bullet_en
    bullets = "\n".join(bullet.replace("{text}", world_entry_text(entry)) for entry in picked)

    template = settings.world_template_zh if zh else settings.world_template_en
    brief = template.replace("{n}", str(len(picked))).replace("{items}", bullets)
    brief = _clamp(brief, max(MIN_WORLD_CLAMP, settings.world_clamp_chars))
    return brief if brief.strip() else ""


def world_entry_text(entry: Any) -> str:
    if isinstance(entry, dict):
        for key in ("text", "content", "description", "name"):
            value = entry.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return json.dumps(entry, ensure_ascii=False, sort_keys=True)
    return str(entry).strip()


def _clamp(text: str, limit: int) -> str:
    if limit <= 0:
        return text
    return text[:limit]
