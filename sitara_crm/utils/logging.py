"""
Logging for the persistence engine.

Every module logs through ``logging.getLogger(__name__)``, so one handler
set on the ``sitara_crm`` logger covers the whole package. The HTTP client
libraries log each request at INFO; they are held at WARNING so backend
switches, migrations and backup rotation stay readable.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

from .config import PersistenceConfig

LOGGER_NAME = "sitara_crm"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

HTTP_LOGGERS = ("httpx", "httpcore")


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    http_level: str = "WARNING",
) -> logging.Logger:
    """
    Attach console and (optionally) rotating file handlers to the package logger.

    Calling it again replaces the handlers of the previous call.

    Args:
        level: Level for sitara_crm.* loggers
        log_file: Rotating log file path (optional)
        max_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep
        http_level: Level for the httpx/httpcore loggers

    Returns:
        The ``sitara_crm`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_level(level))

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(_level(http_level))

    return logger


def setup_logging_from_config(settings: PersistenceConfig) -> logging.Logger:
    """Configure logging from the ``logging`` section of the settings."""
    logger = setup_logging(
        settings.LOG_LEVEL,
        settings.LOG_FILE,
        max_size_mb=settings.LOG_MAX_SIZE_MB,
        backup_count=settings.LOG_BACKUP_COUNT,
    )
    logger.debug(
        f"Logging configured: level={settings.LOG_LEVEL}, file={settings.LOG_FILE or 'none'}, "
        f"backend url={settings.API_URL}, store={settings.DB_PATH}"
    )
    return logger
