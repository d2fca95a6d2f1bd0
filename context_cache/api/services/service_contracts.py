"""Shared lightweight type contracts for service-layer composition."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from context_cache.providers.types import StreamChunk

MessagePayload = Dict[str, Any]
SerializedCache = Dict[str, Any]
TokenEstimator = Callable[[str], int]


class CompletionStream(Protocol):
    """Streaming chat completion call consumed by the summarization pipeline."""

    def __call__(
        self,
        *,
        api_url: str,
        api_key: str,
        model: str,
        messages: List[MessagePayload],
        temperature: float,
        max_tokens: int,
        abort_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]: ...
