"""Compression strategy selection.

Picks a configuration profile per session based on the model name, then
nudges it using runtime cache-hit feedback:

- CACHE_FIRST: models with provider-side prefix caching (DeepSeek). Low
  thresholds, 64-token alignment, minimal summaries.
- REASONING_FIRST: reasoning models (Gemini Pro, Claude, o1/o3). Larger recent
  window, no alignment, more detailed summaries.
- GENERAL: everything else.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Pattern, Tuple

from .context_cache_config_service import ContextCacheConfig

logger = logging.getLogger(__name__)

_AUTO_ADJUST_MIN_INTERVAL_SECONDS = 5 * 60
_HIT_RATE_EMA_KEEP = 0.7
_DOWNGRADE_HIT_RATE = 0.6
_UPGRADE_HIT_RATE = 0.85


class StrategyType(str, Enum):
    CACHE_FIRST = "CACHE_FIRST"
    REASONING_FIRST = "REASONING_FIRST"
    GENERAL = "GENERAL"


STRATEGY_PROFILES: Dict[StrategyType, Dict[str, Any]] = {
    StrategyType.CACHE_FIRST: {
        "compression_threshold": 4000,
        "hard_limit_threshold": 5800,
        "recent_token_limit": 2500,
        "summary_max_tokens": 400,
        "summary_max_tokens_compact": 250,
        "summary_verbosity": "minimal",
        "enable_token_alignment": True,
        "token_align_unit": 64,
        "milestone_threshold": 10,
        "milestone_distill_threshold": 3,
        "entity_map_position": "after_system",
        "middle_layer_token_limit": 1500,
        "layer_token_target": 1500,
    },
    StrategyType.REASONING_FIRST: {
        "compression_threshold": 12000,
        "hard_limit_threshold": 18000,
        "recent_token_limit": 4000,
        "summary_max_tokens": 600,
        "summary_max_tokens_compact": 400,
        "summary_verbosity": "medium",
        "enable_token_alignment": False,
        "token_align_unit": 1,
        "milestone_threshold": 20,
        "milestone_distill_threshold": 4,
        "entity_map_position": "before_dynamic",
        "middle_layer_token_limit": 3000,
        "layer_token_target": 2000,
    },
    StrategyType.GENERAL: {
        "compression_threshold": 6000,
        "hard_limit_threshold": 9000,
        "recent_token_limit": 3000,
        "summary_max_tokens": 500,
        "summary_max_tokens_compact": 300,
        "summary_verbosity": "medium",
        "enable_token_alignment": False,
        "token_align_unit": 1,
        "milestone_threshold": 12,
        "milestone_distill_threshold": 3,
        "entity_map_position": "after_system",
        "middle_layer_token_limit": 2000,
        "layer_token_target": 1800,
    },
}

# Ordered: exact variants before family names.
MODEL_MATCH_RULES: Tuple[Tuple[Pattern[str], StrategyType, float], ...] = (
    (re.compile(r"deepseek[-_]?chat", re.I), StrategyType.CACHE_FIRST, 0.95),
    (re.compile(r"deepseek[-_]?coder", re.I), StrategyType.CACHE_FIRST, 0.95),
    (re.compile(r"deepseek[-_]?v[23]", re.I), StrategyType.CACHE_FIRST, 0.90),
    (re.compile(r"deepseek", re.I), StrategyType.CACHE_FIRST, 0.85),
    (re.compile(r"gemini[-_]?2\.5[-_]?pro", re.I), StrategyType.REASONING_FIRST, 0.95),
    (re.compile(r"gemini[-_]?3[-_]?pro", re.I), StrategyType.REASONING_FIRST, 0.95),
    (re.compile(r"gemini[-_]?2[-_]?flash[-_]?thinking", re.I), StrategyType.REASONING_FIRST, 0.90),
    (re.compile(r"gemini[-_]?exp", re.I), StrategyType.REASONING_FIRST, 0.85),
    (re.compile(r"gemini[-_]?ultra", re.I), StrategyType.REASONING_FIRST, 0.85),
    (re.compile(r"claude[-_]?3[-_]?5[-_]?sonnet", re.I), StrategyType.REASONING_FIRST, 0.90),
    (re.compile(r"claude[-_]?3[-_]?opus", re.I), StrategyType.REASONING_FIRST, 0.90),
    (re.compile(r"claude[-_]?3", re.I), StrategyType.REASONING_FIRST, 0.80),
    (re.compile(r"^o1[-_]?preview", re.I), StrategyType.REASONING_FIRST, 0.95),
    (re.compile(r"^o1[-_]?mini", re.I), StrategyType.REASONING_FIRST, 0.90),
    (re.compile(r"^o1$", re.I), StrategyType.REASONING_FIRST, 0.95),
    (re.compile(r"^o3", re.I), StrategyType.REASONING_FIRST, 0.95),
    (re.compile(r"gpt[-_]?4[-_]?turbo", re.I), StrategyType.GENERAL, 0.85),
    (re.compile(r"gpt[-_]?4o", re.I), StrategyType.GENERAL, 0.85),
    (re.compile(r"gpt[-_]?4", re.I), StrategyType.GENERAL, 0.80),
    (re.compile(r"gpt[-_]?3\.5", re.I), StrategyType.GENERAL, 0.80),
    (re.compile(r"gemini[-_]?pro", re.I), StrategyType.GENERAL, 0.75),
    (re.compile(r"gemini[-_]?flash", re.I), StrategyType.GENERAL, 0.75),
    (re.compile(r"gemini", re.I), StrategyType.GENERAL, 0.70),
    (re.compile(r"llama", re.I), StrategyType.GENERAL, 0.70),
    (re.compile(r"mistral", re.I), StrategyType.GENERAL, 0.70),
    (re.compile(r"qwen", re.I), StrategyType.GENERAL, 0.75),
    (re.compile(r"^yi[-_]?", re.I), StrategyType.GENERAL, 0.70),
)


@dataclass(frozen=True)
class StrategyDetection:
    strategy: StrategyType
    confidence: float
    matched_rule: Optional[str] = None


@dataclass
class StrategyRuntimeState:
    detected_strategy: StrategyType
    confidence: float
    cache_hit_rate: float = 1.0
    last_adjustment_at: float = 0.0
    adjustment_count: int = 0
    performance_score: float = 80.0


@dataclass(frozen=True)
class SessionConfig:
    """Effective, read-only configuration for one session."""
    config: ContextCacheConfig
    strategy: StrategyType
    model_name: str


def detect_strategy(model_name: str) -> StrategyDetection:
    """Detect the best strategy for a model name (GENERAL when nothing matches)."""
    if not model_name:
        return StrategyDetection(StrategyType.GENERAL, 0.5)

    normalized = model_name.lower().strip()
    for pattern, strategy, confidence in MODEL_MATCH_RULES:
        if pattern.search(normalized):
            return StrategyDetection(strategy, confidence, pattern.pattern)
    return StrategyDetection(StrategyType.GENERAL, 0.5)


def get_strategy_profile(strategy: StrategyType) -> Dict[str, Any]:
    return dict(STRATEGY_PROFILES[StrategyType(strategy)])


def get_all_strategy_summary() -> Dict[str, Dict[str, Any]]:
    """Short per-strategy overview for debugging/UI."""
    keys = (
        "compression_threshold",
        "enable_token_alignment",
        "summary_verbosity",
        "milestone_threshold",
        "entity_map_position",
    )
    return {
        strategy.value: {key: profile[key] for key in keys}
        for strategy, profile in STRATEGY_PROFILES.items()
    }


class CompressionStrategyService:
    """Owns per-session strategy state and the resolved session config cache."""

    def __init__(
        self,
        base_config_provider: Callable[[], ContextCacheConfig],
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._base_config_provider = base_config_provider
        self._clock = clock
        self._states: Dict[str, StrategyRuntimeState] = {}
        self._session_configs: Dict[str, SessionConfig] = {}

    def get_or_create_state(self, session_id: str, model_name: str) -> StrategyRuntimeState:
        state = self._states.get(session_id)
        if state is None:
            detection = detect_strategy(model_name)
            state = StrategyRuntimeState(
                detected_strategy=detection.strategy,
                confidence=detection.confidence,
                last_adjustment_at=self._clock(),
            )
            self._states[session_id] = state
            logger.info(
                "[STRATEGY] Session %s initialized with %s strategy (confidence: %.0f%%, model: %s)",
                session_id,
                detection.strategy.value,
                detection.confidence * 100,
                model_name,
            )
        return state

    def get_state(self, session_id: str) -> Optional[StrategyRuntimeState]:
        return self._states.get(session_id)

    def update_state(
        self,
        session_id: str,
        *,
        cache_hit_rate: Optional[float] = None,
        token_savings: Optional[int] = None,
    ) -> None:
        """Fold runtime feedback into the session's strategy state."""
        state = self._states.get(session_id)
        if state is None:
            return

        if cache_hit_rate is not None:
            state.cache_hit_rate = (
                state.cache_hit_rate * _HIT_RATE_EMA_KEEP
                + cache_hit_rate * (1 - _HIT_RATE_EMA_KEEP)
            )

        if state.detected_strategy == StrategyType.CACHE_FIRST:
            score = state.cache_hit_rate * 100
        else:
            score = 60 + state.cache_hit_rate * 40

        if token_savings is not None:
            score += min(20.0, token_savings / 1000)

        state.performance_score = min(100.0, max(0.0, score))

    def auto_adjust(self, session_id: str) -> bool:
        """Switch between CACHE_FIRST and GENERAL based on the hit rate.

        Reasoning models are never adjusted; at most one switch per interval.
        """
        state = self._states.get(session_id)
        if state is None or state.detected_strategy == StrategyType.REASONING_FIRST:
            return False

        now = self._clock()
        if now - state.last_adjustment_at < _AUTO_ADJUST_MIN_INTERVAL_SECONDS:
            return False

        adjusted = False
        if state.detected_strategy == StrategyType.CACHE_FIRST and state.cache_hit_rate < _DOWNGRADE_HIT_RATE:
            logger.info(
                "[STRATEGY] Session %s: CACHE_FIRST -> GENERAL (low cache hit rate: %.1f%%)",
                session_id,
                state.cache_hit_rate * 100,
            )
            state.detected_strategy = StrategyType.GENERAL
            adjusted = True
        elif state.detected_strategy == StrategyType.GENERAL and state.cache_hit_rate > _UPGRADE_HIT_RATE:
            logger.info(
                "[STRATEGY] Session %s: GENERAL -> CACHE_FIRST (high cache hit rate: %.1f%%)",
                session_id,
                state.cache_hit_rate * 100,
            )
            state.detected_strategy = StrategyType.CACHE_FIRST
            adjusted = True

        if adjusted:
            state.adjustment_count += 1
            state.last_adjustment_at = now
            state.confidence = 0.7
            self._session_configs.pop(session_id, None)
        return adjusted

    def set_session_strategy(self, session_id: str, strategy: StrategyType) -> None:
        """Manually pin a strategy, overriding detection."""
        strategy = StrategyType(strategy)
        state = self._states.get(session_id)
        if state is None:
            self._states[session_id] = StrategyRuntimeState(
                detected_strategy=strategy,
                confidence=1.0,
                last_adjustment_at=self._clock(),
            )
        else:
            state.detected_strategy = strategy
            state.confidence = 1.0
            state.last_adjustment_at = self._clock()
        self._session_configs.pop(session_id, None)
        logger.info("[STRATEGY] Session %s manually set to %s", session_id, strategy.value)

    def get_session_config(self, session_id: str, model_name: str) -> SessionConfig:
        """Resolve (and cache) the effective config for a session/model pair."""
        cached = self._session_configs.get(session_id)
        if cached is not None and cached.model_name == model_name:
            return cached

        state = self.get_or_create_state(session_id, model_name)
        config = replace(self._base_config_provider(), **get_strategy_profile(state.detected_strategy))
        resolved = SessionConfig(config=config, strategy=state.detected_strategy, model_name=model_name)
        self._session_configs[session_id] = resolved

        logger.info(
            "[STRATEGY] Session %s using %s strategy (threshold: %s, alignment: %s)",
            session_id,
            resolved.strategy.value,
            config.compression_threshold,
            config.enable_token_alignment,
        )
        return resolved

    def peek_session_config(self, session_id: str) -> Optional[SessionConfig]:
        return self._session_configs.get(session_id)

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)
        self._session_configs.pop(session_id, None)

    def clear_all(self) -> None:
        self._states.clear()
        self._session_configs.clear()
