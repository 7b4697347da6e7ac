"""Process-wide logging: console plus optional rotating file."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

# Third-party loggers that are too chatty at INFO.
NOISY_LOGGERS = ("aiohttp.access", "aiosqlite", "aiogram.event")


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().strip('"').strip("'") or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def configure_logging(service_name: str) -> None:
    """Configure the root logger once at process start.

    File output goes to ``$LOG_DIR/<service_name>.log`` unless LOG_DIR is
    set to an empty/unwritable location, in which case only the console
    handler stays.
    """
    level_name = _env("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root_logger.addHandler(console)

    log_dir = Path(_env("LOG_DIR", DEFAULT_LOG_DIR))
    file_path = log_dir / _env("LOG_FILE_NAME", f"{service_name}.log")
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=_env_int("LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
            backupCount=_env_int("LOG_BACKUP_COUNT", DEFAULT_LOG_BACKUP_COUNT),
            encoding="utf-8",
        )
    except OSError as error:
        logging.getLogger(__name__).warning(
            "File logging disabled: cannot use %s (%s)",
            log_dir,
            error,
        )
    else:
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
