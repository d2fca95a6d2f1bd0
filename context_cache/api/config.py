"""Configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from pathlib import Path
from typing import List, Optional
import os


def _default_cors_origins() -> List[str]:
    """Local dev origins, plus FRONTEND_PORT when set."""
    frontend_port = os.getenv("FRONTEND_PORT", "").strip()
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    if frontend_port:
        origins = [
            f"http://localhost:{frontend_port}",
            f"http://127.0.0.1:{frontend_port}",
            *origins,
        ]
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8765

    # CORS Configuration
    cors_origins: List[str] = Field(default_factory=_default_cors_origins)

    # Context cache configuration file (None -> config/local/context_cache_config.yaml)
    context_cache_config_path: Optional[Path] = None

    # Logging
    log_level: str = "INFO"
    logs_dir: Path = Path("logs")
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value):
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()


# Global settings instance
settings = Settings()
