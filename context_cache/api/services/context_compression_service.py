"""
Context Compression Service

Tiered ("sandwich") prompt cache for long conversations:

    static prefix   system prompt, never touched here
    middle          [entity map] [milestones] [layer 1] [layer 2] ...
                    append-only; existing blocks are never rewritten
    dynamic tail    the most recent raw messages

Old messages are summarized into immutable layers, layers are merged into a
milestone once enough accumulate, and old milestones are distilled again
when they pile up. Every block is padded to a token multiple so the
provider's prefix cache boundary stays stable between requests.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from context_cache.providers.openai_stream import stream_chat_completion
from context_cache.providers.types import ApiConfig, CompletionAbortedError, TokenUsage

from .async_compression_scheduler import AsyncCompressionScheduler, SessionLocks
from .boundary_detector import find_safe_recent_boundary, is_semantic_break_point
from .cache_models import (
    CompressionResult,
    CompressionStats,
    LayerLocation,
    SessionCache,
    SummaryLayer,
)
from .calibration_service import CalibrationService
from .compression_metrics import CompressionMetrics, CompressionMetricsStore
from .compression_strategy import (
    CompressionStrategyService,
    StrategyType,
    get_all_strategy_summary,
)
from .context_cache_config_service import ContextCacheConfig, ContextCacheConfigService
from .entity_extractor import build_entity_map_text, extract, update_entity_map
from .milestone_service import MilestoneService
from .service_contracts import CompletionStream, MessagePayload, SerializedCache, TokenEstimator
from .session_cache_store import LayerLike, SessionCacheStore
from .summary_generator import SummaryGenerator, build_layer_id
from .token_estimation import calculate_tokens, estimate_tokens as default_estimate_tokens
from .token_estimation import message_text

logger = logging.getLogger(__name__)


class ContextCompressionService:
    """Entry point for context compression, calibration and cache management."""

    def __init__(
        self,
        *,
        complete: Optional[CompletionStream] = None,
        estimate_tokens: Optional[TokenEstimator] = None,
        config_service: Optional[ContextCacheConfigService] = None,
        store: Optional[SessionCacheStore] = None,
        strategy_service: Optional[CompressionStrategyService] = None,
        metrics: Optional[CompressionMetricsStore] = None,
        locks: Optional[SessionLocks] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config_service = config_service or ContextCacheConfigService()
        self._estimate_tokens = estimate_tokens or default_estimate_tokens
        self._clock = clock
        self.store = store or SessionCacheStore(clock=clock)
        self.strategy_service = strategy_service or CompressionStrategyService(
            lambda: self.config_service.config,
            clock=clock,
        )
        self.metrics = metrics or CompressionMetricsStore()
        self.locks = locks or SessionLocks()

        base = self.config_service.config
        self.generator = SummaryGenerator(
            complete or stream_chat_completion,
            estimate_tokens=self._estimate_tokens,
            block_end_marker=base.block_end_marker,
            message_char_limit=base.message_char_limit,
            temperature=base.summary_temperature,
        )
        self.milestone_service = MilestoneService(self.generator, clock=clock)
        self.calibration = CalibrationService(base)
        self.scheduler = AsyncCompressionScheduler(
            store=self.store,
            compress=self.compress_context,
            should_compress=self._needs_compression,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_base_settings(self) -> None:
        """Pick up base config edits made through reload_config/save_config."""
        base = self.config_service.config
        self.generator.block_end_marker = base.block_end_marker
        self.generator.message_char_limit = base.message_char_limit
        self.generator.temperature = base.summary_temperature
        self.calibration.config = base

    def _config_for(self, session_id: str) -> ContextCacheConfig:
        resolved = self.strategy_service.peek_session_config(session_id)
        return resolved.config if resolved else self.config_service.config

    @staticmethod
    def _valid_messages(messages: Sequence[MessagePayload]) -> List[MessagePayload]:
        return [m for m in messages if not m.get("local_only")]

    def _needs_compression(
        self,
        session_id: str,
        messages: List[MessagePayload],
        api_config: ApiConfig,
    ) -> bool:
        config = self.strategy_service.get_session_config(session_id, api_config.model).config
        total = calculate_tokens(self._valid_messages(messages), self._estimate_tokens)
        return total > config.compression_threshold

    @staticmethod
    def _summary_max_tokens(cache: SessionCache, config: ContextCacheConfig) -> int:
        middle_tokens = cache.middle_layer_tokens()
        if middle_tokens >= config.middle_layer_token_limit:
            logger.info(f"[COMPRESSION] Middle layer too long ({middle_tokens} tokens), using compact mode")
            return config.summary_max_tokens_compact
        return config.summary_max_tokens

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    async def compress_context(
        self,
        session_id: str,
        messages: Sequence[MessagePayload],
        api_config: ApiConfig,
        abort_event: Optional[asyncio.Event] = None,
    ) -> CompressionResult:
        """Split messages into cached summary blocks and a raw recent tail.

        Below the compression threshold every (non local-only) message is
        returned untouched and ``summary_text`` is None.
        """
        self._refresh_base_settings()
        resolved = self.strategy_service.get_session_config(session_id, api_config.model)
        config = resolved.config

        valid_messages = self._valid_messages(messages)
        total_tokens = calculate_tokens(valid_messages, self._estimate_tokens)

        if total_tokens <= config.compression_threshold:
            return CompressionResult(
                summary_text=None,
                entity_map_text="",
                recent_messages=valid_messages,
                stats=CompressionStats(
                    total_tokens=total_tokens,
                    summary_tokens=0,
                    recent_tokens=total_tokens,
                    layer_count=0,
                    milestone_count=0,
                    compressed=False,
                    entities=[],
                    pending_compression=False,
                    strategy=resolved.strategy.value,
                    entity_map_position=config.entity_map_position,
                ),
            )

        cache = self.store.get_or_create(session_id)
        metrics = self.metrics.record_request(session_id, bool(cache.layers or cache.milestones))
        self.strategy_service.update_state(session_id, cache_hit_rate=metrics.cache_hit_rate)
        if self.strategy_service.auto_adjust(session_id):
            resolved = self.strategy_service.get_session_config(session_id, api_config.model)
            config = resolved.config

        recent_start = find_safe_recent_boundary(
            valid_messages,
            config.recent_token_limit,
            estimate_tokens=self._estimate_tokens,
            sliding_buffer_margin=config.sliding_buffer_margin,
        )
        recent_messages = valid_messages[recent_start:]
        old_messages = valid_messages[:recent_start]

        async with self.locks.get(session_id):
            # Re-read: the cache may have advanced (or been replaced) while waiting.
            cache = self.store.get_or_create(session_id)
            try:
                await self._maybe_create_layer(
                    session_id,
                    cache,
                    old_messages,
                    total_tokens,
                    config,
                    api_config,
                    abort_event,
                )
            except CompletionAbortedError:
                logger.info(f"[COMPRESSION] Summarization aborted for session {session_id}, no layer created")
            except Exception as e:
                logger.error(f"[COMPRESSION] Failed to generate summary: {e}", exc_info=True)

        blocks = cache.all_blocks()
        summary_text = "".join(b.summary_text for b in blocks).rstrip() + "\n" if blocks else None
        entities: List[str] = []
        for block in blocks:
            for entity in block.entities:
                if entity not in entities:
                    entities.append(entity)

        summary_tokens = cache.middle_layer_tokens()
        recent_tokens = calculate_tokens(recent_messages, self._estimate_tokens)
        if blocks:
            self.strategy_service.update_state(
                session_id,
                token_savings=max(0, total_tokens - summary_tokens - recent_tokens),
            )

        return CompressionResult(
            summary_text=summary_text,
            entity_map_text=build_entity_map_text(cache.entity_map),
            recent_messages=recent_messages,
            stats=CompressionStats(
                total_tokens=total_tokens,
                summary_tokens=summary_tokens,
                recent_tokens=recent_tokens,
                layer_count=len(cache.layers),
                milestone_count=len(cache.milestones),
                compressed=bool(blocks),
                entities=entities,
                pending_compression=cache.pending_compression,
                strategy=resolved.strategy.value,
                entity_map_position=config.entity_map_position,
            ),
        )

    async def _maybe_create_layer(
        self,
        session_id: str,
        cache: SessionCache,
        old_messages: List[MessagePayload],
        total_tokens: int,
        config: ContextCacheConfig,
        api_config: ApiConfig,
        abort_event: Optional[asyncio.Event],
    ) -> None:
        new_count = len(old_messages) - cache.processed_count
        if new_count <= 0:
            return

        new_messages = old_messages[cache.processed_count:]
        new_tokens = calculate_tokens(new_messages, self._estimate_tokens)
        is_break_point = is_semantic_break_point(new_messages[-1])
        is_hard_limit = total_tokens >= config.hard_limit_threshold
        if is_hard_limit:
            self.metrics.record_hard_limit_trigger(session_id)

        if new_tokens < config.layer_token_target and new_count < config.layer_message_target:
            return

        if is_hard_limit:
            logger.info(
                f"[COMPRESSION] Hard limit reached ({total_tokens} tokens, threshold: "
                f"{config.hard_limit_threshold}), forcing compression"
            )
        elif not is_break_point:
            # Deferred: retried on a later call that ends on a break point.
            cache.pending_compression = True
            logger.info(f"[COMPRESSION] Pending: not at semantic break point (session {session_id})")
            return

        logger.info(f"[COMPRESSION] Creating new layer: {new_count} msgs, {new_tokens} tokens")
        result = await self.generator.generate_summary(
            new_messages,
            api_config,
            [e.name for e in cache.entity_map.values()],
            self._summary_max_tokens(cache, config),
            compact_max_tokens=config.summary_max_tokens_compact,
            verbosity=config.summary_verbosity,
            abort_event=abort_event,
        )
        if not result.summary:
            return

        layer_index = len(cache.layers)
        message_range = (cache.processed_count, len(old_messages))
        formatted = self.generator.format_summary_output(
            result.summary,
            layer_index,
            message_range,
            is_milestone=False,
            enable_alignment=config.enable_token_alignment,
            align_unit=config.token_align_unit,
            calibration_offset=cache.calibration_offset,
        )
        update_entity_map(
            cache.entity_map,
            extract(" ".join(message_text(m) for m in new_messages)),
            cache.layer_sequence,
        )
        cache.layers.append(
            SummaryLayer(
                id=build_layer_id(new_messages),
                summary_text=formatted,
                token_count=self._estimate_tokens(formatted),
                message_range=message_range,
                created_at=self._clock(),
                is_milestone=False,
                entities=tuple(result.entities),
                decisions=tuple(result.decisions),
            )
        )
        cache.processed_count = len(old_messages)
        cache.layer_sequence += 1
        cache.last_update_at = self._clock()
        cache.pending_compression = False
        self.metrics.record_layer_creation(session_id)
        logger.info(f"[COMPRESSION] Layer #{len(cache.layers)} created for session {session_id}")

        if len(cache.layers) >= config.milestone_threshold:
            await self._merge_milestone(session_id, cache, config, api_config, abort_event)

    async def _merge_milestone(
        self,
        session_id: str,
        cache: SessionCache,
        config: ContextCacheConfig,
        api_config: ApiConfig,
        abort_event: Optional[asyncio.Event],
    ) -> None:
        logger.info(
            f"[COMPRESSION] Triggering milestone merge for {len(cache.layers)} layers "
            f"(threshold: {config.milestone_threshold})"
        )
        milestone = await self.milestone_service.merge_layers(
            cache.layers,
            api_config,
            milestone_index=len(cache.milestones),
            max_tokens=config.milestone_max_tokens,
            enable_alignment=config.enable_token_alignment,
            align_unit=config.token_align_unit,
            calibration_offset=cache.calibration_offset,
            abort_event=abort_event,
        )
        if milestone is None:
            return

        cache.milestones.append(milestone)
        cache.layers = []
        self.metrics.record_milestone_creation(session_id)
        logger.info(f"[COMPRESSION] Milestone #{len(cache.milestones)} created for session {session_id}")

        if len(cache.milestones) < config.milestone_distill_threshold:
            return

        logger.info(f"[COMPRESSION] Triggering milestone distillation for {len(cache.milestones)} milestones")
        distilled = await self.milestone_service.distill_milestones(
            cache.milestones,
            api_config,
            max_tokens=config.distill_max_tokens,
            enable_alignment=config.enable_token_alignment,
            align_unit=config.token_align_unit,
            calibration_offset=cache.calibration_offset,
            abort_event=abort_event,
        )
        if distilled is None:
            return

        cache.milestones = [distilled, cache.milestones[-1]]
        self.metrics.record_milestone_distillation(session_id)
        logger.info(f"[COMPRESSION] Milestones distilled for session {session_id}")

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def calibrate_token_offset(
        self,
        session_id: str,
        api_cache_hit_tokens: Optional[int],
        expected_cache_tokens: int,
        actual_prompt_tokens: Optional[int] = None,
        estimated_prompt_tokens: Optional[int] = None,
    ) -> bool:
        """Feed provider usage back into the session; True when anything was adjusted."""
        cache = self.store.get(session_id)
        if cache is None:
            return False

        config = self._config_for(session_id)
        adjusted = False
        if self.calibration.calibrate_bias(cache, actual_prompt_tokens, estimated_prompt_tokens, config):
            self.metrics.record_calibration_adjustment(session_id)
            adjusted = True
        if self.calibration.calibrate_offset(cache, api_cache_hit_tokens, expected_cache_tokens, config):
            self.metrics.record_calibration_adjustment(session_id)
            adjusted = True
        return adjusted

    def calibrate_from_usage(
        self,
        session_id: str,
        usage: Optional[TokenUsage],
        expected_cache_tokens: int,
        estimated_prompt_tokens: Optional[int] = None,
    ) -> bool:
        if usage is None:
            return False
        return self.calibrate_token_offset(
            session_id,
            usage.cache_hit_tokens,
            expected_cache_tokens,
            actual_prompt_tokens=usage.prompt_tokens or None,
            estimated_prompt_tokens=estimated_prompt_tokens,
        )

    def get_calibrated_token_estimate(self, session_id: str, raw_estimate: int) -> int:
        return self.calibration.get_calibrated_estimate(
            self.store.get(session_id),
            raw_estimate,
            self._config_for(session_id),
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_cache_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        cache = self.store.get(session_id)
        if cache is None:
            return None

        config = self._config_for(session_id)
        resolved = self.strategy_service.peek_session_config(session_id)
        state = self.strategy_service.get_state(session_id)
        metrics = self.metrics.get(session_id) or CompressionMetrics()
        average_bias = (
            cache.cumulative_bias_sum / cache.bias_calibration_samples
            if cache.bias_calibration_samples > 0
            else 0.0
        )

        return {
            "layer_count": len(cache.layers),
            "milestone_count": len(cache.milestones),
            "total_tokens": cache.middle_layer_tokens(),
            "processed_messages": cache.processed_count,
            "entities": [e.name for e in cache.entity_map.values()],
            "entity_map_size": len(cache.entity_map),
            "last_update_at": cache.last_update_at,
            "pending_compression": cache.pending_compression,
            "strategy": {
                "type": resolved.strategy.value,
                "compression_threshold": resolved.config.compression_threshold,
                "enable_token_alignment": resolved.config.enable_token_alignment,
                "milestone_threshold": resolved.config.milestone_threshold,
                "performance_score": state.performance_score if state else None,
            } if resolved else None,
            "token_bias": {
                "factor": cache.token_bias_factor,
                "samples": cache.bias_calibration_samples,
                "average_bias": average_bias,
                "is_calibrated": self.calibration.is_calibrated(cache, config),
                "calibration_offset": cache.calibration_offset,
            },
            "metrics": metrics.to_dict(),
        }

    def find_layer_by_message_index(self, session_id: str, message_index: int) -> Optional[LayerLocation]:
        """Locate the block that currently summarizes ``message_index``."""
        cache = self.store.get(session_id)
        if cache is None:
            return None

        for i, milestone in enumerate(cache.milestones):
            if milestone.contains(message_index):
                return LayerLocation("milestone", i, milestone.message_range)
        for i, layer in enumerate(cache.layers):
            if layer.contains(message_index):
                return LayerLocation("layer", i, layer.message_range)
        return LayerLocation("recent", -1, (cache.processed_count, -1))

    def get_global_compression_metrics(self) -> Dict[str, Any]:
        total_layers = 0
        total_milestones = 0
        hit_rate_sum = 0.0
        sessions_with_requests = 0

        for session_id, cache in self.store.items():
            total_layers += len(cache.layers)
            total_milestones += len(cache.milestones)
            metrics = self.metrics.get(session_id)
            if metrics and metrics.total_requests > 0:
                hit_rate_sum += metrics.cache_hit_rate
                sessions_with_requests += 1

        return {
            "session_count": len(self.store),
            "total_layers": total_layers,
            "total_milestones": total_milestones,
            "average_hit_rate": hit_rate_sum / sessions_with_requests if sessions_with_requests else 1.0,
        }

    def get_strategy_summary(self) -> Dict[str, Dict[str, Any]]:
        return get_all_strategy_summary()

    def set_session_strategy(self, session_id: str, strategy: StrategyType) -> None:
        self.strategy_service.set_session_strategy(session_id, strategy)

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def clear_summary_cache(self, session_id: str) -> bool:
        existed = self.store.clear(session_id)
        self.strategy_service.clear(session_id)
        self.metrics.clear(session_id)
        self.locks.discard(session_id)
        logger.info(f"[COMPRESSION] Cache cleared for session: {session_id}")
        return existed

    def clear_all_summary_cache(self) -> int:
        count = self.store.clear_all()
        self.strategy_service.clear_all()
        self.metrics.clear_all()
        self.locks.clear()
        logger.info(f"[COMPRESSION] All caches cleared ({count} sessions)")
        return count

    def export_cache(self, session_id: str) -> Optional[SerializedCache]:
        return self.store.export(session_id)

    def prewarm_cache(self, session_id: str, data: SerializedCache) -> None:
        self.store.prewarm(session_id, data)

    def prewarm_milestones_only(
        self,
        session_id: str,
        milestones: Sequence[LayerLike],
        processed_count: int,
    ) -> None:
        self.store.prewarm_milestones_only(session_id, milestones, processed_count)

    # ------------------------------------------------------------------
    # Background compression
    # ------------------------------------------------------------------

    def trigger_async_compression(
        self,
        session_id: str,
        messages: Sequence[MessagePayload],
        api_config: ApiConfig,
    ) -> bool:
        return self.scheduler.trigger_async(session_id, list(messages), api_config)

    async def wait_for_async_compression(self, session_id: str) -> None:
        await self.scheduler.wait_for(session_id)
