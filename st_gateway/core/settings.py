from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com"


@dataclass(frozen=True, slots=True)
class GatewaySettings:
    """Immutable configuration threaded through every proxy stage.

    Tests derive per-call variants with ``dataclasses.replace``.
    """

    inject_chinese_on_zh: bool = True
    chinese_instruction_text: str = "请用中文回复"

    force_user_priority: bool = True
    user_priority_text_zh: str = (
        "请直接回应用户最新一句，不要重复开场白；如与设定冲突，以用户最新请求为准。"
        "若用户提出计算或事实问题，请直接给出结果。"
    )
    user_priority_text_en: str = (
        "Directly respond to the latest user message without repeating greetings. "
        "If it conflicts with persona, prioritize the latest user request. "
        "For calculations or factual questions, answer directly."
    )

    roleplay_enforcer: bool = False
    roleplay_instruction_zh: str = (
        "你正在扮演「{char}」，需遵循角色卡、世界观与当前聊天历史，"
        "不要重启对话或自我介绍，用中文并保持角色口吻自然回应「{user}」。"
    )
    roleplay_instruction_en: str = (
        'You are roleplaying as "{char}". Follow the character sheet, world info and '
        "current chat history. Do not restart the conversation or re-introduce "
        'yourself. Reply naturally in character to "{user}".'
    )

    use_character_card: bool = False
    card_template_zh: str = (
        "角色卡（精要）：\n姓名：{name}\n设定：{description}\n性格：{personality}\n"
        "场景：{scenario}\n开场示例：{first_mes}"
    )
    card_template_en: str = (
        "Character Card (Brief):\nName: {name}\nDescription: {description}\n"
        "Personality: {personality}\nScenario: {scenario}\n"
        "First Message Example: {first_mes}"
    )

    use_world_info: bool = False
    world_items: int = 3
    world_template_zh: str = "世界观（精要，最多{n}条）：\n{items}"
    world_template_en: str = "World Info (brief, up to {n}):\n{items}"
    world_item_bullet_zh: str = "- {text}"
    world_item_bullet_en: str = "- {text}"

    persona_clamp_chars: int = 1200
    world_clamp_chars: int = 800

    strict_latest_only: bool = False
    strict_latest_drop_persona: bool = False

    chat_history_turns: int = 8

    intent_anchor: bool = True
    intent_anchor_clamp: int = 400
    intent_anchor_text_zh: str = (
        "最新用户意图（最高优先级）：「{lastUser}」。请紧扣此意图推进剧情，不要寒暄或重启。"
    )
    intent_anchor_text_en: str = (
        'Latest user intent (highest priority): "{lastUser}". Please stick to it to '
        "advance the scene without small talk or restarts."
    )

    hard_intent_append: bool = True
    hard_intent_suffix_zh: str = "（请直接据此回应）"
    hard_intent_suffix_en: str = " (please respond to this directly)"

    intent_rule_math: bool = True
    intent_rule_math_text_zh: str = "如果最新意图包含算式或“只回答数字”，仅输出阿拉伯数字结果。"
    intent_rule_math_text_en: str = (
        "If the latest intent contains a formula or requests numbers only, "
        "output only the numeric result."
    )
    intent_rule_story: bool = True
    intent_rule_story_text_zh: str = (
        "如果最新意图包含“剧情推进/继续剧情/采取行动”，请立刻在既有世界观内执行下一步具体行动，"
        "避免寒暄与重启。"
    )
    intent_rule_story_text_en: str = (
        "If the latest intent says to advance/continue/act, immediately take the next "
        "concrete action within the existing world without small talk or restarts."
    )

    scrub_meta_prompts: bool = True
    preserve_message_structure: bool = False

    gemini_max_output_tokens: int = 1024
    openai_compat_max_tokens: int = 1024
    max_temperature: float = 2.0

    retry_count: int = 2
    retry_delay_ms: int = 400
    upstream_timeout_ms: int = 60000
    stream_chunk_chars: int = 120

    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    openai_compat_base: str = ""
    openrouter_base_url: str = DEFAULT_OPENROUTER_BASE_URL
    openrouter_referer: str = "https://sillytavern.app"
    openrouter_title: str = "SillyTavern"

    makersuite_api_key: str = ""
    openai_api_key: str = ""
    openrouter_api_key: str = ""
    generic_api_key: str = ""

    store_path: str = ""
    log_level: str = "INFO"


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "").strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "").strip())
    except ValueError:
        return default


def load_settings() -> GatewaySettings:
    d = GatewaySettings()
    return GatewaySettings(
        inject_chinese_on_zh=_env_bool("INJECT_CHINESE_IF_ZH", d.inject_chinese_on_zh),
        chinese_instruction_text=_env_str("CHINESE_INSTRUCTION_TEXT", d.chinese_instruction_text),
        force_user_priority=_env_bool("FORCE_USER_PRIORITY", d.force_user_priority),
        user_priority_text_zh=_env_str("USER_PRIORITY_TEXT_ZH", d.user_priority_text_zh),
        user_priority_text_en=_env_str("USER_PRIORITY_TEXT_EN", d.user_priority_text_en),
        roleplay_enforcer=_env_bool("ROLEPLAY_ENFORCER", d.roleplay_enforcer),
        roleplay_instruction_zh=_env_str("ROLEPLAY_INSTRUCTION_ZH", d.roleplay_instruction_zh),
        roleplay_instruction_en=_env_str("ROLEPLAY_INSTRUCTION_EN", d.roleplay_instruction_en),
        use_character_card=_env_bool("ROLEPLAY_USE_CHARACTER_CARD", d.use_character_card),
        card_template_zh=_env_str("ROLEPLAY_CARD_TEMPLATE_ZH", d.card_template_zh),
        card_template_en=_env_str("ROLEPLAY_CARD_TEMPLATE_EN", d.card_template_en),
        use_world_info=_env_bool("ROLEPLAY_USE_WORLD_INFO", d.use_world_info),
        world_items=_env_int("ROLEPLAY_WORLD_ITEMS", d.world_items),
        world_template_zh=_env_str("ROLEPLAY_WORLD_TEMPLATE_ZH", d.world_template_zh),
        world_template_en=_env_str("ROLEPLAY_WORLD_TEMPLATE_EN", d.world_template_en),
        world_item_bullet_zh=_env_str("ROLEPLAY_WORLD_ITEM_BULLET_ZH", d.world_item_bullet_zh),
        world_item_bullet_en=_env_str("ROLEPLAY_WORLD_ITEM_BULLET_EN", d.world_item_bullet_en),
        persona_clamp_chars=_env_int("PERSONA_CLAMP_CHARS", d.persona_clamp_chars),
        world_clamp_chars=_env_int("WORLD_CLAMP_CHARS", d.world_clamp_chars),
        strict_latest_only=_env_bool("STRICT_LATEST_ONLY", d.strict_latest_only),
        strict_latest_drop_persona=_env_bool(
            "STRICT_LATEST_DROP_PERSONA", d.strict_latest_drop_persona
        ),
        chat_history_turns=_env_int("CHAT_HISTORY_TURNS", d.chat_history_turns),
        intent_anchor=_env_bool("INTENT_ANCHOR", d.intent_anchor),
        intent_anchor_clamp=_env_int("INTENT_ANCHOR_CLAMP", d.intent_anchor_clamp),
        intent_anchor_text_zh=_env_str("INTENT_ANCHOR_TEXT_ZH", d.intent_anchor_text_zh),
        intent_anchor_text_en=_env_str("INTENT_ANCHOR_TEXT_EN", d.intent_anchor_text_en),
        hard_intent_append=_env_bool("HARD_INTENT_APPEND", d.hard_intent_append),
        hard_intent_suffix_zh=_env_str("HARD_INTENT_SUFFIX_ZH", d.hard_intent_suffix_zh),
        hard_intent_suffix_en=_env_str("HARD_INTENT_SUFFIX_EN", d.hard_intent_suffix_en),
        intent_rule_math=_env_bool("INTENT_RULE_MATH", d.intent_rule_math),
        intent_rule_math_text_zh=_env_str("INTENT_RULE_MATH_TEXT_ZH", d.intent_rule_math_text_zh),
        intent_rule_math_text_en=_env_str("INTENT_RULE_MATH_TEXT_EN", d.intent_rule_math_text_en),
        intent_rule_story=_env_bool("INTENT_RULE_STORY", d.intent_rule_story),
        intent_rule_story_text_zh=_env_str(
            "INTENT_RULE_STORY_TEXT_ZH", d.intent_rule_story_text_zh
        ),
        intent_rule_story_text_en=_env_str(
            "INTENT_RULE_STORY_TEXT_EN", d.intent_rule_story_text_en
        ),
        scrub_meta_prompts=_env_bool("SCRUB_ST_META_PROMPTS", d.scrub_meta_prompts),
        preserve_message_structure=_env_bool(
            "PRESERVE_MESSAGE_STRUCTURE", d.preserve_message_structure
        ),
        gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", d.gemini_max_output_tokens),
        openai_compat_max_tokens=_env_int("OPENAI_COMPAT_MAX_TOKENS", d.openai_compat_max_tokens),
        max_temperature=_env_float("MAX_TEMPERATURE", d.max_temperature),
        retry_count=_env_int("GEMINI_RETRY_COUNT", d.retry_count),
        retry_delay_ms=_env_int("GEMINI_RETRY_DELAY_MS", d.retry_delay_ms),
        upstream_timeout_ms=_env_int("UPSTREAM_TIMEOUT_MS", d.upstream_timeout_ms),
        stream_chunk_chars=_env_int("STREAM_CHUNK_CHARS", d.stream_chunk_chars),
        gemini_base_url=_env_str("GEMINI_BASE_URL", d.gemini_base_url).rstrip("/"),
        openai_compat_base=_env_str("OPENAI_COMPAT_BASE", d.openai_compat_base).rstrip("/"),
        openrouter_base_url=_env_str("OPENROUTER_BASE_URL", d.openrouter_base_url).rstrip("/"),
        openrouter_referer=_env_str("OPENROUTER_REFERER", d.openrouter_referer),
        openrouter_title=_env_str("OPENROUTER_TITLE", d.openrouter_title),
        makersuite_api_key=_env_str("MAKERSUITE_API_KEY", ""),
        openai_api_key=_env_str("OPENAI_API_KEY", ""),
        openrouter_api_key=_env_str("OPENROUTER_API_KEY", _env_str("OPENROUTER_TOKEN", "")),
        generic_api_key=_env_str("GENERIC_API_KEY", ""),
        store_path=_env_str("ST_GATEWAY_STORE_PATH", ""),
        log_level=_env_str("ST_GATEWAY_LOG_LEVEL", d.log_level).upper(),
    )
