"""Logging setup for the texture conversion pipeline."""

import logging
import logging.handlers
import os
import threading
from typing import Optional, Union

PACKAGE_LOGGER = "texture_pipeline"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [T%(thread)d]: %(message)s"

logger = logging.getLogger(PACKAGE_LOGGER)

# 10 MB max per log file, keep 3 rotated backups
_LOG_MAX_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3
_setup_lock = threading.Lock()


def resolve_level(level: Union[str, int]) -> int:
    """Map a level name (or number) to a logging constant, defaulting to INFO."""
    if isinstance(level, int):
        return level
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        logger.warning("Invalid log level '%s', defaulting to INFO", level)
        return logging.INFO
    return numeric_level


def setup_logging(level: Union[str, int] = "INFO", log_file: Optional[str] = None,
                  force: bool = False) -> logging.Logger:
    """Configure logging without clobbering host-app handlers by default."""
    with _setup_lock:
        return _setup_logging_impl(level, log_file, force)


def _file_handler(log_file: str) -> logging.Handler:
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _setup_logging_impl(level, log_file, force) -> logging.Logger:
    numeric_level = resolve_level(level)
    root = logging.getLogger()

    if force or not root.handlers:
        handlers = [logging.StreamHandler()]
        if log_file:
            handlers.append(_file_handler(log_file))
        logging.basicConfig(
            level=numeric_level,
            format=LOG_FORMAT,
            handlers=handlers,
            force=force,
        )
        logger.setLevel(numeric_level)
        logger.debug("Logging initialized (level=%s, file=%s)", level, log_file)
        return logger

    # Embedded mode: a host application owns the root logger, so only the
    # texture_pipeline hierarchy is touched.
    logger.setLevel(numeric_level)
    if log_file:
        target = os.path.abspath(log_file)
        existing_files = {
            getattr(h, "baseFilename", None)
            for h in logger.handlers
            if isinstance(h, logging.FileHandler)
        }
        if target not in existing_files:
            logger.addHandler(_file_handler(log_file))
            logger.info("Adding file handler: %s", target)
    return logger
