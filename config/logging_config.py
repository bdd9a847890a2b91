"""
Centralized logging configuration.
All batchflow modules log through loggers created here.
"""
import logging
import logging.handlers
import os
from pathlib import Path
from .constants import (
    LOG_LEVEL, LOG_FORMAT, LOG_FILE,
    LOG_MAX_SIZE_MB, LOG_BACKUP_COUNT
)

APP_LOGGER_NAME = 'batchflow'


def _configure_app_logger() -> logging.Logger:
    """Attach console and rotating file handlers to the application logger once."""
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if app_logger.handlers:
        return app_logger

    app_logger.setLevel(getattr(logging, os.getenv('BATCHFLOW_LOG_LEVEL', LOG_LEVEL).upper(), logging.INFO))

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    app_logger.addHandler(console)

    log_file = os.getenv('BATCHFLOW_LOG_FILE', LOG_FILE)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_SIZE_MB * 1024 * 1024,
            backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        app_logger.addHandler(file_handler)

    return app_logger


def setup_logger(name: str = None) -> logging.Logger:
    """
    Get a logger that writes through the application handlers.

    Module names outside the ``batchflow`` package (``api.batch_router``,
    ``config.settings``) are nested under it so every record reaches the
    same console and file handlers.

    Usage:
        from config.logging_config import get_logger
        logger = get_logger(__name__)
        logger.info("Message here")

    Args:
        name: Logger name. If None, returns the application logger.

    Returns:
        Configured logging.Logger instance.
    """
    app_logger = _configure_app_logger()
    if not name or name == APP_LOGGER_NAME:
        return app_logger
    if name.startswith(APP_LOGGER_NAME + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")


def get_logger(name: str = None) -> logging.Logger:
    """Alias for setup_logger for convenience."""
    return setup_logger(name)


# Usage: from config.logging_config import logger
logger = setup_logger(APP_LOGGER_NAME)
