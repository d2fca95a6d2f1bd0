"""
Context Cache Config Service

Manages the base configuration for the tiered context cache. Strategy
profiles (see compression_strategy.py) override a subset of these values
per model.
"""
import logging
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..paths import (
    config_defaults_dir,
    config_local_dir,
    ensure_local_file,
)

logger = logging.getLogger(__name__)

_SECTION = "context_cache"


@dataclass
class ContextCacheConfig:
    """Base configuration for context compression"""
    # Token threshold that triggers compression
    compression_threshold: int = 4000
    # Hard limit: compress even without a semantic break point
    hard_limit_threshold: int = 5800
    # Token budget for the raw recent window
    recent_token_limit: int = 2500
    # New old-message tokens (or message count) needed before a layer is built
    layer_token_target: int = 1500
    layer_message_target: int = 10
    summary_max_tokens: int = 500
    summary_max_tokens_compact: int = 300
    # Middle (milestones + layers) token size that switches to compact summaries
    middle_layer_token_limit: int = 1500
    block_end_marker: str = "\n<!-- END -->\n"
    token_align_unit: int = 64
    enable_token_alignment: bool = True
    milestone_threshold: int = 10
    milestone_distill_threshold: int = 3
    token_estimate_margin: int = 200
    calibration_miss_threshold: int = 3
    sliding_buffer_margin: int = 200
    bias_calibration_min_samples: int = 3
    bias_factor_max: float = 1.15
    bias_factor_min: float = 0.90
    bias_significance_threshold: float = 0.03
    summary_verbosity: str = "medium"
    entity_map_position: str = "after_system"
    summary_temperature: float = 0.2
    milestone_max_tokens: int = 600
    distill_max_tokens: int = 300
    message_char_limit: int = 300

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ContextCacheConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known and value is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ContextCacheConfigService:
    """Service for managing context cache configuration"""

    def __init__(self, config_path: Optional[str] = None):
        self.defaults_path: Optional[Path] = None

        if config_path is None:
            self.defaults_path = config_defaults_dir() / "context_cache_config.yaml"
            self.config_path = config_local_dir() / "context_cache_config.yaml"
        else:
            self.config_path = Path(config_path)
        self._ensure_config_exists()
        self.config = self._load_config()

    def _ensure_config_exists(self) -> None:
        """Create default config file if it doesn't exist"""
        if not self.config_path.exists():
            default_data = {_SECTION: ContextCacheConfig().to_dict()}
            initial_text = yaml.safe_dump(default_data, allow_unicode=True, sort_keys=False)
            ensure_local_file(
                local_path=self.config_path,
                defaults_path=self.defaults_path,
                initial_text=initial_text,
            )
            logger.info(f"Created default context cache config at {self.config_path}")

    def _load_config(self) -> ContextCacheConfig:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}

            return ContextCacheConfig.from_dict(data.get(_SECTION, {}))
        except Exception as e:
            logger.error(f"Failed to load context cache config: {e}")
            return ContextCacheConfig()

    def reload_config(self):
        """Reload configuration from file"""
        self.config = self._load_config()

    def save_config(self, updates: Dict):
        """Save updated configuration to file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}

            if _SECTION not in data:
                data[_SECTION] = {}

            for key, value in updates.items():
                if value is not None:
                    data[_SECTION][key] = value

            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.dump(data, f, allow_unicode=True, default_flow_style=False)

            self.reload_config()
            logger.info("Context cache config updated successfully")
        except Exception as e:
            logger.error(f"Failed to save context cache config: {e}")
            raise
