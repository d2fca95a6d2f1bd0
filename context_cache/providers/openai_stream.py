"""
OpenAI-compatible streaming completion client

Default ``complete`` implementation used by the context compression engine.
Works with OpenAI and compatible providers (DeepSeek, OpenRouter, Groq, ...).
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .types import ChunkType, CompletionAbortedError, StreamChunk, TokenUsage

logger = logging.getLogger(__name__)


def _to_langchain_messages(messages: List[Dict[str, Any]]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "") or ""
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _normalize_base_url(api_url: str) -> str:
    url = (api_url or "").rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")]
    return url


def create_llm(
    *,
    api_url: str,
    api_key: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> ChatOpenAI:
    """Create a streaming ChatOpenAI instance for summarization calls."""
    return ChatOpenAI(
        model=model,
        base_url=_normalize_base_url(api_url),
        api_key=api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        streaming=True,
        stream_usage=True,
    )


async def stream_chat_completion(
    *,
    api_url: str,
    api_key: str,
    model: str,
    messages: List[Dict[str, Any]],
    temperature: float,
    max_tokens: int,
    abort_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[StreamChunk]:
    """
    Stream a chat completion as normalized chunks.

    Args:
        api_url: Base URL (``.../v1``) or full ``/chat/completions`` URL
        api_key: Bearer token
        model: Model ID
        messages: Role/content dicts
        temperature: Sampling temperature
        max_tokens: Output token cap
        abort_event: Set by the caller to stop the stream early

    Yields:
        StreamChunk objects (``content`` or ``tool_calls``)

    Raises:
        CompletionAbortedError: if ``abort_event`` is set mid-stream
    """
    llm = create_llm(
        api_url=api_url,
        api_key=api_key,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    usage_data: Optional[TokenUsage] = None

    async for chunk in llm.astream(_to_langchain_messages(messages)):
        if abort_event is not None and abort_event.is_set():
            logger.info("[COMPLETION] Stream aborted by caller (model: %s)", model)
            raise CompletionAbortedError(f"Completion for {model} aborted")

        usage_metadata = getattr(chunk, "usage_metadata", None)
        if usage_metadata:
            usage_data = TokenUsage.from_dict(dict(usage_metadata))

        tool_call_chunks = getattr(chunk, "tool_call_chunks", None) or []
        if tool_call_chunks:
            yield StreamChunk(type=ChunkType.TOOL_CALLS, tool_calls=list(tool_call_chunks), usage=usage_data)

        content = chunk.content if isinstance(chunk.content, str) else ""
        if content:
            yield StreamChunk(type=ChunkType.CONTENT, content=content, usage=usage_data)
