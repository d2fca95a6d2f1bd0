"""Tests for the OpenAI-compatible streaming completion client."""

import asyncio

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from context_cache.providers import openai_stream
from context_cache.providers.openai_stream import _normalize_base_url, _to_langchain_messages, create_llm
from context_cache.providers.types import ChunkType, CompletionAbortedError, TokenUsage


class _FakeLLM:
    def __init__(self, chunks, on_chunk=None):
        self.chunks = chunks
        self.on_chunk = on_chunk
        self.received = None

    async def astream(self, messages):
        self.received = messages
        for index, chunk in enumerate(self.chunks):
            if self.on_chunk is not None:
                self.on_chunk(index)
            yield chunk


def _install_fake_llm(monkeypatch, llm):
    captured = {}

    def _fake_create_llm(**kwargs):
        captured.update(kwargs)
        return llm

    monkeypatch.setattr(openai_stream, "create_llm", _fake_create_llm)
    return captured


async def _collect(**kwargs):
    return [chunk async for chunk in openai_stream.stream_chat_completion(**kwargs)]


def _request(**overrides):
    request = {
        "api_url": "https://api.deepseek.com/v1",
        "api_key": "k",
        "model": "deepseek-chat",
        "messages": [
            {"role": "system", "content": "summarize"},
            {"role": "user", "content": "U: hello"},
        ],
        "temperature": 0.2,
        "max_tokens": 300,
    }
    request.update(overrides)
    return request


@pytest.mark.parametrize(
    "api_url,expected",
    [
        ("https://api.deepseek.com/v1", "https://api.deepseek.com/v1"),
        ("https://api.deepseek.com/v1/", "https://api.deepseek.com/v1"),
        ("https://api.openai.com/v1/chat/completions", "https://api.openai.com/v1"),
        ("", ""),
    ],
)
def test_normalize_base_url(api_url, expected):
    assert _normalize_base_url(api_url) == expected


def test_to_langchain_messages_maps_roles():
    converted = _to_langchain_messages(
        [
            {"role": "system", "content": "s"},
            {"role": "assistant", "content": None},
            {"role": "user", "content": "u"},
            {"role": "tool", "content": "t"},
        ]
    )

    assert [type(m) for m in converted] == [SystemMessage, AIMessage, HumanMessage, HumanMessage]
    assert converted[1].content == ""


def test_create_llm_uses_normalized_base_url():
    llm = create_llm(
        api_url="https://api.deepseek.com/v1/chat/completions",
        api_key="k",
        model="deepseek-chat",
        temperature=0.2,
        max_tokens=300,
    )

    assert llm.model_name == "deepseek-chat"
    assert llm.openai_api_base == "https://api.deepseek.com/v1"
    assert llm.streaming is True


def test_stream_yields_content_tool_calls_and_usage(monkeypatch):
    llm = _FakeLLM(
        [
            AIMessageChunk(content="- Entities: "),
            AIMessageChunk(
                content="",
                tool_call_chunks=[{"name": "lookup", "args": "{}", "id": "call_1", "index": 0}],
            ),
            AIMessageChunk(
                content="Alice",
                usage_metadata={"input_tokens": 40, "output_tokens": 3, "total_tokens": 43},
            ),
        ]
    )
    captured = _install_fake_llm(monkeypatch, llm)

    chunks = asyncio.run(_collect(**_request()))

    assert [c.type for c in chunks] == [ChunkType.CONTENT, ChunkType.TOOL_CALLS, ChunkType.CONTENT]
    assert "".join(c.content for c in chunks) == "- Entities: Alice"
    assert chunks[1].tool_calls[0]["name"] == "lookup"
    assert chunks[-1].usage.prompt_tokens == 40
    assert captured["max_tokens"] == 300
    assert captured["api_url"] == "https://api.deepseek.com/v1"
    assert isinstance(llm.received[0], SystemMessage)


def test_stream_raises_when_abort_event_fires(monkeypatch):
    abort_event = asyncio.Event()

    def _abort_on_second_chunk(index):
        if index == 1:
            abort_event.set()

    llm = _FakeLLM([AIMessageChunk(content="a"), AIMessageChunk(content="b")], on_chunk=_abort_on_second_chunk)
    _install_fake_llm(monkeypatch, llm)

    async def _consume():
        received = []
        with pytest.raises(CompletionAbortedError):
            async for chunk in openai_stream.stream_chat_completion(**_request(abort_event=abort_event)):
                received.append(chunk.content)
        return received

    assert asyncio.run(_consume()) == ["a"]


def test_token_usage_from_deepseek_payload():
    usage = TokenUsage.from_dict(
        {"prompt_tokens": 1200, "completion_tokens": 80, "total_tokens": 1280, "prompt_cache_hit_tokens": 1024}
    )

    assert usage.prompt_tokens == 1200
    assert usage.cache_hit_tokens == 1024


def test_token_usage_from_openai_payload():
    usage = TokenUsage.from_dict(
        {"prompt_tokens": 900, "completion_tokens": 50, "prompt_tokens_details": {"cached_tokens": 768}}
    )

    assert usage.total_tokens == 950
    assert usage.cache_hit_tokens == 768


def test_token_usage_from_empty_payload():
    assert TokenUsage.from_dict(None) is None
    assert TokenUsage.from_dict({}) is None
