from __future__ import annotations

from .base import DemoBranch

_PROVIDER_LABELS = {"openai-compat": "OpenAI", "openrouter": "OpenRouter"}


def demo_reply(branch: DemoBranch, user_text: str, *, is_zh: bool) -> str:
    """Canned echo returned when no upstream call is made.

    The prefix names why the request was not forwarded: a missing Google
    key, an unconfigured OpenAI/OpenRouter proxy, or a plain demo source.
    """

    text = user_text.strip()

    if branch.origin == "gemini":
        if is_zh:
            return f"（未配置 Google API Key，返回演示）你说：{text or '...'}"
        return f"(Google API key not configured, demo reply) You said: {text or '...'}"

    label = _PROVIDER_LABELS.get(branch.origin)
    if label is not None:
        if is_zh:
            prefix = f"（{label}代理未配置）"
            return f"{prefix}你说：{text}" if text else prefix
        prefix = f"({label} proxy not configured)"
        return f"{prefix} You said: {text}" if text else prefix

    if is_zh:
        return f"（演示回复）你说：{text}" if text else "（演示回复）你好，我在这里。"
    return f"(demo reply) You said: {text}" if text else "(demo reply) Hi, I'm here."
