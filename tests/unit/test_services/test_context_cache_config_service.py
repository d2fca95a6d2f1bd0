"""Unit tests for ContextCacheConfigService."""

import yaml

from context_cache.api.services.context_cache_config_service import ContextCacheConfig, ContextCacheConfigService


def test_creates_default_file(temp_config_dir):
    config_path = temp_config_dir / "context_cache_config.yaml"

    service = ContextCacheConfigService(config_path=str(config_path))

    assert config_path.exists()
    assert service.config == ContextCacheConfig()
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["context_cache"]["compression_threshold"] == 4000
    assert data["context_cache"]["block_end_marker"] == "\n<!-- END -->\n"


def test_save_config_persists_updates(temp_config_dir):
    config_path = temp_config_dir / "context_cache_config.yaml"
    service = ContextCacheConfigService(config_path=str(config_path))

    service.save_config({"compression_threshold": 8000, "summary_verbosity": "detailed", "token_align_unit": None})

    assert service.config.compression_threshold == 8000
    reloaded = ContextCacheConfigService(config_path=str(config_path))
    assert reloaded.config.compression_threshold == 8000
    assert reloaded.config.summary_verbosity == "detailed"
    assert reloaded.config.token_align_unit == 64


def test_unknown_keys_are_ignored(temp_config_dir):
    config_path = temp_config_dir / "context_cache_config.yaml"
    config_path.write_text(
        "context_cache:\n  milestone_threshold: 4\n  legacy_option: true\n",
        encoding="utf-8",
    )

    service = ContextCacheConfigService(config_path=str(config_path))

    assert service.config.milestone_threshold == 4
    assert service.config.hard_limit_threshold == 5800


def test_invalid_yaml_falls_back_to_defaults(temp_config_dir):
    config_path = temp_config_dir / "context_cache_config.yaml"
    config_path.write_text("context_cache: [unclosed\n", encoding="utf-8")

    service = ContextCacheConfigService(config_path=str(config_path))

    assert service.config == ContextCacheConfig()


def test_reload_picks_up_external_edits(temp_config_dir):
    config_path = temp_config_dir / "context_cache_config.yaml"
    service = ContextCacheConfigService(config_path=str(config_path))
    config_path.write_text("context_cache:\n  recent_token_limit: 999\n", encoding="utf-8")

    service.reload_config()

    assert service.config.recent_token_limit == 999


def test_bundled_defaults_match_dataclass():
    from context_cache.api.paths import config_defaults_dir

    data = yaml.safe_load((config_defaults_dir() / "context_cache_config.yaml").read_text(encoding="utf-8"))

    assert ContextCacheConfig.from_dict(data["context_cache"]) == ContextCacheConfig()
