"""
Provider Types and Data Models

Defines the Pydantic models shared by the completion client and the
context compression engine.
"""
from enum import Enum
from typing import List, Optional, Any
from pydantic import BaseModel, Field


class ChunkType(str, Enum):
    """Kinds of chunks produced by a streaming chat completion"""
    CONTENT = "content"
    TOOL_CALLS = "tool_calls"


class CompletionAbortedError(Exception):
    """Raised by a completion client when the caller's abort event fires."""


class ApiConfig(BaseModel):
    """Connection settings for the summarization model."""
    api_url: str
    api_key: str = ""
    model: str


class TokenUsage(BaseModel):
    """Token usage information from LLM response."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cache_hit_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["TokenUsage"]:
        """Create TokenUsage from provider-specific dict format.

        Understands both DeepSeek style ``prompt_cache_hit_tokens`` and OpenAI
        style ``prompt_tokens_details.cached_tokens``.
        """
        if not data:
            return None
        prompt = data.get("prompt_tokens", data.get("input_tokens", 0)) or 0
        completion = data.get("completion_tokens", data.get("output_tokens", 0)) or 0

        cache_hit = data.get("prompt_cache_hit_tokens")
        if cache_hit is None:
            details = data.get("prompt_tokens_details") or {}
            if isinstance(details, dict):
                cache_hit = details.get("cached_tokens")

        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=data.get("total_tokens", 0) or (prompt + completion),
            cache_hit_tokens=cache_hit,
        )


class StreamChunk(BaseModel):
    """
    Represents a streaming chunk from a chat completion.

    Only ``content`` chunks carry text the compression engine consumes.
    """
    type: ChunkType = ChunkType.CONTENT
    content: str = Field(default="", description="Main response content")
    tool_calls: List[Any] = Field(default_factory=list, description="Tool call requests")
    usage: Optional[TokenUsage] = Field(default=None, description="Token usage (typically in final chunk)")
