"""Token calibration against provider-reported usage.

Two independent loops:

- bias factor: average of (actual - estimated) / estimated prompt tokens,
  applied as a clamped multiplicative correction once enough samples exist
- alignment offset: after repeated prefix-cache misses, a fixed offset
  (rounded up to the alignment unit) is assumed to be consumed upstream
"""

import logging
import math
from typing import Optional

from .cache_models import SessionCache
from .context_cache_config_service import ContextCacheConfig

logger = logging.getLogger(__name__)

_MIN_FACTOR_CHANGE = 0.01


class CalibrationService:
    """Stateless calibration rules applied to a SessionCache."""

    def __init__(self, config: Optional[ContextCacheConfig] = None):
        self.config = config or ContextCacheConfig()

    def calibrate_bias(
        self,
        cache: SessionCache,
        actual_prompt_tokens: Optional[int],
        estimated_prompt_tokens: Optional[int],
        config: Optional[ContextCacheConfig] = None,
    ) -> bool:
        config = config or self.config
        if actual_prompt_tokens is None or not estimated_prompt_tokens or estimated_prompt_tokens <= 0:
            return False

        bias_ratio = (actual_prompt_tokens - estimated_prompt_tokens) / estimated_prompt_tokens
        cache.cumulative_bias_sum += bias_ratio
        cache.bias_calibration_samples += 1

        if cache.bias_calibration_samples < config.bias_calibration_min_samples:
            return False

        average_bias = cache.cumulative_bias_sum / cache.bias_calibration_samples
        if abs(average_bias) < config.bias_significance_threshold:
            return False

        new_factor = min(config.bias_factor_max, max(config.bias_factor_min, 1 + average_bias))
        if abs(new_factor - cache.token_bias_factor) <= _MIN_FACTOR_CHANGE:
            return False

        logger.info(
            "[CALIBRATION] Token bias factor adjusted: %.3f -> %.3f (avg bias: %.1f%%, samples: %d)",
            cache.token_bias_factor,
            new_factor,
            average_bias * 100,
            cache.bias_calibration_samples,
        )
        cache.token_bias_factor = new_factor
        return True

    def calibrate_offset(
        self,
        cache: SessionCache,
        cache_hit_tokens: Optional[int],
        expected_cache_tokens: int,
        config: Optional[ContextCacheConfig] = None,
    ) -> bool:
        config = config or self.config
        if cache_hit_tokens is None:
            return False

        unit = max(1, config.token_align_unit)
        diff = expected_cache_tokens - cache_hit_tokens
        if abs(diff) <= unit:
            cache.consecutive_misses = 0
            return False

        cache.consecutive_misses += 1
        logger.info(
            "[CALIBRATION] Cache miss detected: expected=%d, actual=%d, consecutive=%d",
            expected_cache_tokens,
            cache_hit_tokens,
            cache.consecutive_misses,
        )
        if cache.consecutive_misses < config.calibration_miss_threshold:
            return False

        new_offset = math.ceil(diff / unit) * unit if diff > 0 else 0
        cache.consecutive_misses = 0
        if new_offset == cache.calibration_offset:
            return False

        logger.info("[CALIBRATION] Calibrating token offset: %d -> %d", cache.calibration_offset, new_offset)
        cache.calibration_offset = new_offset
        return True

    def is_calibrated(self, cache: Optional[SessionCache], config: Optional[ContextCacheConfig] = None) -> bool:
        config = config or self.config
        return cache is not None and cache.bias_calibration_samples >= config.bias_calibration_min_samples

    def get_calibrated_estimate(
        self,
        cache: Optional[SessionCache],
        raw_estimate: int,
        config: Optional[ContextCacheConfig] = None,
    ) -> int:
        """Raw estimate plus a fixed margin until warmed up, then bias-corrected."""
        config = config or self.config
        if not self.is_calibrated(cache, config):
            return raw_estimate + config.token_estimate_margin
        return math.ceil(raw_estimate * cache.token_bias_factor)
