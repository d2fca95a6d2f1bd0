"""Unit tests for background compression scheduling and session locks."""

import asyncio
import logging

import pytest

from context_cache.providers.types import ApiConfig
from context_cache.api.services.async_compression_scheduler import AsyncCompressionScheduler, SessionLocks
from context_cache.api.services.session_cache_store import SessionCacheStore

API_CONFIG = ApiConfig(api_url="https://api.example.com/v1", api_key="k", model="deepseek-chat")


class _GatedCompressor:
    def __init__(self, error=None):
        self.release = asyncio.Event()
        self.calls = []
        self.error = error

    async def __call__(self, session_id, messages, api_config):
        self.calls.append((session_id, len(messages), api_config.model))
        await self.release.wait()
        if self.error is not None:
            raise self.error


def _scheduler(compressor, should_compress=True):
    store = SessionCacheStore()
    scheduler = AsyncCompressionScheduler(
        store=store,
        compress=compressor,
        should_compress=lambda *_args: should_compress,
    )
    return scheduler, store


@pytest.mark.asyncio
async def test_trigger_runs_once_per_session():
    compressor = _GatedCompressor()
    scheduler, store = _scheduler(compressor)
    messages = [{"role": "user", "content": "hi"}]

    assert scheduler.trigger_async("s1", messages, API_CONFIG) is True
    assert store.get("s1").async_compression_in_progress is True
    assert scheduler.is_running("s1") is True
    assert scheduler.trigger_async("s1", messages, API_CONFIG) is False

    compressor.release.set()
    await scheduler.wait_for("s1")

    assert compressor.calls == [("s1", 1, "deepseek-chat")]
    assert store.get("s1").async_compression_in_progress is False
    assert scheduler.is_running("s1") is False


@pytest.mark.asyncio
async def test_trigger_skips_when_below_threshold():
    scheduler, store = _scheduler(_GatedCompressor(), should_compress=False)

    assert scheduler.trigger_async("s1", [], API_CONFIG) is False
    assert store.get("s1") is None


@pytest.mark.asyncio
async def test_trigger_skips_when_cache_flag_is_set():
    scheduler, store = _scheduler(_GatedCompressor())
    store.get_or_create("s1").async_compression_in_progress = True

    assert scheduler.trigger_async("s1", [], API_CONFIG) is False
    assert scheduler.is_running("s1") is False


@pytest.mark.asyncio
async def test_failed_background_run_is_logged_and_flag_cleared(caplog):
    compressor = _GatedCompressor(error=RuntimeError("upstream down"))
    scheduler, store = _scheduler(compressor)
    compressor.release.set()

    with caplog.at_level(logging.ERROR):
        assert scheduler.trigger_async("s1", [], API_CONFIG) is True
        await scheduler.wait_for("s1")

    assert "Background compression failed" in caplog.text
    assert store.get("s1").async_compression_in_progress is False
    assert scheduler.trigger_async("s1", [], API_CONFIG) is True
    await scheduler.wait_all()


def test_trigger_outside_event_loop_releases_claim():
    compressor = _GatedCompressor()
    scheduler, store = _scheduler(compressor)

    with pytest.raises(RuntimeError):
        scheduler.trigger_async("s1", [], API_CONFIG)

    assert store.get("s1").async_compression_in_progress is False
    assert scheduler.is_running("s1") is False

    # Not skipped as "already in progress": the trigger reaches task creation again.
    with pytest.raises(RuntimeError):
        scheduler.trigger_async("s1", [], API_CONFIG)
    assert compressor.calls == []


@pytest.mark.asyncio
async def test_wait_for_without_task_returns_immediately():
    scheduler, _store = _scheduler(_GatedCompressor())
    await scheduler.wait_for("missing")
    await scheduler.wait_all()


@pytest.mark.asyncio
async def test_session_locks_are_per_session():
    locks = SessionLocks()
    lock = locks.get("s1")

    assert locks.get("s1") is lock
    assert locks.get("s2") is not lock

    async with lock:
        locks.discard("s1")
        assert locks.get("s1") is lock

    locks.clear()
    assert locks.get("s1") is not lock
