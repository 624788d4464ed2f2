"""
Shared helpers.
"""
import logging

from app.core import config


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "app"


def _setup_root_logger() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    # Avoid duplicate handlers on reload
    if logger.handlers:
        return logger

    logger.setLevel(config.LOG_LEVEL)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stream_handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    Loggers outside the ``app`` package (``server``, ``scripts.*``) are
    parented under it so they share one handler.

    Usage:
        log = get_logger(__name__)
    """
    _setup_root_logger()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
