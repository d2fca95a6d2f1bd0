"""Background compression scheduling with per-session de-duplication."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from context_cache.providers.types import ApiConfig

from .service_contracts import MessagePayload
from .session_cache_store import SessionCacheStore

logger = logging.getLogger(__name__)

CompressFn = Callable[[str, List[MessagePayload], ApiConfig], Awaitable[Any]]
ShouldCompressFn = Callable[[str, List[MessagePayload], ApiConfig], bool]


class SessionLocks:
    """Hands out one asyncio.Lock per session id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def clear(self) -> None:
        for session_id in list(self._locks):
            self.discard(session_id)


class AsyncCompressionScheduler:
    """Runs at most one background compression per session."""

    def __init__(
        self,
        *,
        store: SessionCacheStore,
        compress: CompressFn,
        should_compress: ShouldCompressFn,
    ):
        self._store = store
        self._compress = compress
        self._should_compress = should_compress
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, session_id: str) -> bool:
        return session_id in self._tasks

    def trigger_async(
        self,
        session_id: str,
        messages: List[MessagePayload],
        api_config: ApiConfig,
    ) -> bool:
        """Start background compression unless one is queued or running.

        Must be called from inside a running event loop. Returns True when a
        task was started.
        """
        if session_id in self._tasks:
            logger.info(f"[ASYNC-COMPRESS] Already queued for session {session_id}, skipping")
            return False

        existing = self._store.get(session_id)
        if existing is not None and existing.async_compression_in_progress:
            logger.info(f"[ASYNC-COMPRESS] Already in progress for session {session_id}, skipping")
            return False

        if not self._should_compress(session_id, messages, api_config):
            return False

        # Claim the session before any await so concurrent triggers see it.
        cache = self._store.get_or_create(session_id)
        cache.async_compression_in_progress = True
        logger.info(f"[ASYNC-COMPRESS] Triggering background compression for session {session_id}")

        run = self._run(session_id, list(messages), api_config)
        try:
            self._tasks[session_id] = asyncio.create_task(run)
        except Exception:
            # No running loop: release the claim so later triggers are not skipped.
            run.close()
            cache.async_compression_in_progress = False
            raise
        return True

    async def _run(self, session_id: str, messages: List[MessagePayload], api_config: ApiConfig) -> None:
        try:
            await self._compress(session_id, messages, api_config)
        except Exception as e:
            logger.error(f"[ASYNC-COMPRESS] Background compression failed for session {session_id}: {e}", exc_info=True)
        finally:
            cache = self._store.get(session_id)
            if cache is not None:
                cache.async_compression_in_progress = False
            self._tasks.pop(session_id, None)

    async def wait_for(self, session_id: str) -> None:
        """Block until any in-flight background compression for the session finishes."""
        task: Optional[asyncio.Task] = self._tasks.get(session_id)
        if task is not None:
            await task

    async def wait_all(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
