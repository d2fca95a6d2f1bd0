"""Unit tests for recent-window boundaries and break-point detection."""

import pytest

from context_cache.api.services.boundary_detector import (
    BREAK,
    CONTINUATION,
    classify_message,
    find_safe_recent_boundary,
    is_semantic_break_point,
)
from context_cache.api.services.token_estimation import calculate_tokens, estimate_tokens


def test_estimate_tokens_counts_cjk_and_latin_separately():
    assert estimate_tokens("") == 0
    assert estimate_tokens("hello") == 2
    assert estimate_tokens("你好世界") == 3
    assert estimate_tokens("你好 ok") == 3


def test_calculate_tokens_treats_missing_content_as_empty():
    messages = [{"role": "user", "content": "abcd"}, {"role": "assistant", "content": None}]
    assert calculate_tokens(messages) == 1


def test_boundary_is_zero_when_everything_fits(message_factory):
    messages = [message_factory(i, 100) for i in range(4)]
    assert find_safe_recent_boundary(messages, 1000) == 0


def test_boundary_extends_to_user_turn_within_margin(message_factory):
    messages = [
        message_factory(0, 1000, role="user"),
        message_factory(1, 100, role="user"),
        message_factory(2, 1000, role="assistant"),
        message_factory(3, 500, role="user"),
    ]

    assert find_safe_recent_boundary(messages, 1500, sliding_buffer_margin=200) == 1


def test_boundary_stays_on_assistant_when_extension_exceeds_margin(message_factory):
    messages = [
        message_factory(0, 1000, role="user"),
        message_factory(1, 300, role="user"),
        message_factory(2, 1000, role="assistant"),
        message_factory(3, 500, role="user"),
    ]

    assert find_safe_recent_boundary(messages, 1500, sliding_buffer_margin=200) == 2


def test_boundary_never_splits_tool_chain(message_factory):
    messages = [
        message_factory(0, 1000, role="user"),
        message_factory(1, 50, role="assistant", tool_calls=[{"id": "call_1"}]),
        message_factory(2, 800, role="tool", tool_call_id="call_1"),
        message_factory(3, 300, role="tool", tool_call_id="call_1"),
        message_factory(4, 400, role="assistant"),
    ]

    boundary = find_safe_recent_boundary(messages, 1000)

    assert boundary == 1
    recent_ids = [m["id"] for m in messages[boundary:]]
    assert recent_ids[:3] == ["m1", "m2", "m3"]


def test_boundary_on_orphan_tool_result_walks_back_to_user(message_factory):
    messages = [
        message_factory(0, 100, role="user"),
        message_factory(1, 900, role="tool"),
        message_factory(2, 600, role="tool"),
    ]

    assert find_safe_recent_boundary(messages, 700) == 0


def test_boundary_is_len_when_last_message_alone_exceeds_budget(message_factory):
    messages = [message_factory(0, 100), message_factory(1, 5000)]
    assert find_safe_recent_boundary(messages, 1000) == 2


def test_boundary_uses_injected_estimator():
    messages = [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]
    assert find_safe_recent_boundary(messages, 10, estimate_tokens=lambda _text: 10) == 1


@pytest.mark.parametrize(
    "message",
    [
        None,
        {"role": "user", "content": ""},
        {"role": "user", "content": "   "},
        {"role": "user", "content": "Okay"},
        {"role": "user", "content": "Thanks!"},
        {"role": "user", "content": "好的"},
        {"role": "user", "content": "明白了！"},
        {"role": "user", "content": "Can we ship this today?"},
        {"role": "assistant", "content": "```python\nprint(1)\n```\nThat prints one."},
    ],
)
def test_break_points(message):
    assert is_semantic_break_point(message) is True


@pytest.mark.parametrize(
    "message",
    [
        {"role": "user", "content": "Let me check the logs,"},
        {"role": "user", "content": "Here is the plan:"},
        {"role": "user", "content": "Wait..."},
        {"role": "assistant", "content": "```python\nprint(1)"},
        {"role": "user", "content": "Then we deploy it."},
        {"role": "user", "content": "然后我们部署。"},
        {"role": "user", "content": "I will handle the migration and"},
        {"role": "user", "content": "sounds like a plan"},
    ],
)
def test_not_break_points(message):
    assert is_semantic_break_point(message) is False


def test_continuation_rules_take_priority_over_break_rules():
    # Matches both the acknowledgement and the trailing-comma shapes.
    assert classify_message("Okay, then:") == CONTINUATION
    assert classify_message("Okay.") == BREAK


def test_long_assistant_reply_without_punctuation_is_a_break_point():
    long_reply = "word " * 30
    assert is_semantic_break_point({"role": "assistant", "content": long_reply}) is True
    assert is_semantic_break_point({"role": "user", "content": long_reply}) is False
