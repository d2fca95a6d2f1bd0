"""Heuristic token estimation for mixed CJK / Latin text."""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Sequence

from .service_contracts import TokenEstimator

_CJK_RE = re.compile(r"[\u4e00-\u9fff]")
_CJK_CHARS_PER_TOKEN = 1.5
_OTHER_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens: ~1.5 CJK chars per token, ~4 other chars per token."""
    if not text:
        return 0
    cjk_count = len(_CJK_RE.findall(text))
    other_count = len(text) - cjk_count
    return math.ceil(cjk_count / _CJK_CHARS_PER_TOKEN) + math.ceil(other_count / _OTHER_CHARS_PER_TOKEN)


def message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def calculate_tokens(messages: Sequence[Dict[str, Any]], estimator: TokenEstimator = estimate_tokens) -> int:
    return sum(estimator(message_text(msg)) for msg in messages)
