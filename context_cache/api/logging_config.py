"""Centralized logging configuration module"""

import logging
from pathlib import Path
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional

from .config import settings

# Whether already initialized
_initialized = False


def setup_logging(
    logs_dir: Optional[Path] = None,
    level: Optional[str] = None,
    *,
    log_file_name: str = "server.log",
) -> Path:
    """Configure console + rotating file logging once per process.

    Returns:
        Path of the active log file.
    """
    global _initialized

    logs_dir = Path(logs_dir or settings.logs_dir)
    log_file = logs_dir / log_file_name
    if _initialized:
        return log_file

    # Create logs directory
    logs_dir.mkdir(parents=True, exist_ok=True)

    # Write session separator
    with open(log_file, 'a', encoding='utf-8') as f:
        f.write("\n" + "=" * 100 + "\n")
        f.write(f"Server started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write("=" * 100 + "\n\n")

    formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    resolved_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(resolved_level)
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding='utf-8',
    )
    file_handler.setLevel(resolved_level)
    file_handler.setFormatter(formatter)

    # Configure root logger
    logging.basicConfig(
        level=resolved_level,
        handlers=[console_handler, file_handler],
        force=True
    )

    logging.getLogger('context_cache').setLevel(resolved_level)

    # Reduce log level for third-party libraries
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)

    _initialized = True

    logging.getLogger(__name__).info(
        "Logging initialized: file=%s level=%s max_bytes=%s backups=%s",
        log_file.absolute(),
        logging.getLevelName(resolved_level),
        settings.log_max_bytes,
        settings.log_backup_count,
    )
    return log_file
