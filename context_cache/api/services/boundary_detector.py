"""Recent-window boundary selection and semantic break-point detection.

Break-point classification is an ordered rule table. Continuation rules are
listed before break rules and the first matching rule wins, so a message such
as "Done, then:" is never treated as a safe cut even though it also looks like
an acknowledgement.
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Sequence, Tuple

from .service_contracts import MessagePayload, TokenEstimator
from .token_estimation import estimate_tokens as default_estimate_tokens
from .token_estimation import message_text

CONTINUATION = "continuation"
BREAK = "break"

_ASSISTANT_FALLBACK_MIN_CHARS = 100

_Matcher = Callable[[str], bool]


def _regex(pattern: str, flags: int = 0) -> _Matcher:
    compiled = re.compile(pattern, flags)
    return lambda content: compiled.search(content) is not None


def _has_open_code_fence(content: str) -> bool:
    return content.count("```") % 2 == 1


_END_PUNCT = r"[\s。！!,.，]*$"

BREAK_POINT_RULES: Tuple[Tuple[str, _Matcher, str], ...] = (
    ("open_code_fence", _has_open_code_fence, CONTINUATION),
    ("leading_connective_zh", _regex(r"^\s*(?:然后|接下来|首先|其次|最后|另外|此外)"), CONTINUATION),
    (
        "leading_connective_en",
        _regex(r"^\s*(?:then|next|first|firstly|second|secondly|also|additionally|moreover|furthermore)\b", re.I),
        CONTINUATION,
    ),
    ("trailing_connective_en", _regex(r"\b(?:and|or|but|so|because|then|which|that)$", re.I), CONTINUATION),
    ("trailing_comma_colon", _regex(r"[,，:：;；]$"), CONTINUATION),
    ("trailing_ellipsis", _regex(r"(?:\.\.\.|…)$"), CONTINUATION),
    ("acknowledgement_zh", _regex(r"^(?:好的|就这样|先这样|那就这样|暂时就这些|我知道了|明白了|了解了|收到)" + _END_PUNCT), BREAK),
    (
        "acknowledgement_en",
        _regex(r"^(?:ok|okay|got it|sounds good|great|perfect|understood|noted|i see|that's all|that's it)" + _END_PUNCT, re.I),
        BREAK,
    ),
    ("closing_zh", _regex(r"^(?:谢谢|感谢|多谢|辛苦了|下次再|回头再|稍后再|待会再)" + _END_PUNCT), BREAK),
    (
        "closing_en",
        _regex(r"^(?:thanks|thank you|thx|bye|see you|talk later|later)" + _END_PUNCT, re.I),
        BREAK,
    ),
    ("sentence_final_punctuation", _regex(r"[。！!?？.]$"), BREAK),
)


def classify_message(content: str) -> Optional[str]:
    """Return the classification of the first matching rule, or None."""
    for _name, matches, classification in BREAK_POINT_RULES:
        if matches(content):
            return classification
    return None


def is_semantic_break_point(last_message: Optional[MessagePayload]) -> bool:
    """Whether it is conversationally safe to cut right after this message."""
    if not last_message:
        return True
    content = message_text(last_message).strip()
    if not content:
        return True

    classification = classify_message(content)
    if classification is not None:
        return classification == BREAK

    # A long assistant reply is treated as a complete answer.
    return last_message.get("role") == "assistant" and len(content) > _ASSISTANT_FALLBACK_MIN_CHARS


def find_safe_recent_boundary(
    messages: Sequence[MessagePayload],
    target_tokens: int,
    *,
    estimate_tokens: TokenEstimator = default_estimate_tokens,
    sliding_buffer_margin: int = 200,
) -> int:
    """Index where the raw "recent" window starts.

    Messages from the end are kept while they fit in ``target_tokens``. The
    boundary is then moved back so a user/assistant pair or a tool-call chain
    is not cut in half.
    """
    tokens = 0
    boundary = len(messages)

    for i in range(len(messages) - 1, -1, -1):
        msg_tokens = estimate_tokens(message_text(messages[i]))
        if tokens + msg_tokens > target_tokens:
            boundary = i + 1
            break
        tokens += msg_tokens
        boundary = i

    if 0 < boundary < len(messages):
        role = messages[boundary].get("role")

        if role == "assistant":
            for i in range(boundary - 1, -1, -1):
                if messages[i].get("role") == "user":
                    extra = sum(estimate_tokens(message_text(m)) for m in messages[i:boundary])
                    if extra <= sliding_buffer_margin:
                        boundary = i
                    break

        elif role == "tool":
            for i in range(boundary - 1, -1, -1):
                candidate = messages[i]
                if candidate.get("role") == "assistant" and candidate.get("tool_calls"):
                    boundary = i
                    break
                if candidate.get("role") == "user":
                    boundary = i
                    break

    return boundary
