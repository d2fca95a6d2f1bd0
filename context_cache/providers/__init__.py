"""
LLM Provider Layer

Key components:
- types: Data models shared with the compression engine
- openai_stream: default streaming chat completion client

Usage:
    from context_cache.providers import ApiConfig, stream_chat_completion

    async for chunk in stream_chat_completion(
        api_url="https://api.deepseek.com",
        api_key="your-key",
        model="deepseek-chat",
        messages=[{"role": "user", "content": "hi"}],
        temperature=0.2,
        max_tokens=256,
    ):
        if chunk.type == ChunkType.CONTENT:
            print(chunk.content, end="")
"""

from .types import (
    ApiConfig,
    ChunkType,
    CompletionAbortedError,
    StreamChunk,
    TokenUsage,
)
from .openai_stream import stream_chat_completion

__all__ = [
    "ApiConfig",
    "ChunkType",
    "CompletionAbortedError",
    "StreamChunk",
    "TokenUsage",
    "stream_chat_completion",
]
