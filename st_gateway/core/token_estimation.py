from __future__ import annotations

import math
from typing import Iterable


def estimate_tokens(text: str) -> int:
    if not text:
        return 0

    return max(1, math.ceil(len(text) / 4))


def estimate_prompt_tokens(texts: Iterable[str]) -> int:
    return estimate_tokens("\n".join(text for text in texts if text))
