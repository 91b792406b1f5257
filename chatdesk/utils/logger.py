"""Utility for consistent logging across chatdesk modules."""
import functools
import logging
import os
from typing import Any, Callable

__all__ = ["get_logger", "log_function_call"]


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger with basic configuration.

    Log level can be controlled via CHATDESK_LOG_LEVEL env var. Default INFO.
    """
    level_str = os.getenv("CHATDESK_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)
    # Configure root logger only once.
    if not logging.getLogger().handlers:
        logging.basicConfig(
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            level=level,
        )
    logger = logging.getLogger(name or "chatdesk")
    logger.setLevel(level)
    return logger


def log_function_call() -> Callable:
    """Decorator to log function calls."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            logger = get_logger(func.__module__)
            logger.info(f"Calling {func.__name__}")
            try:
                result = func(*args, **kwargs)
                logger.info(f"Completed {func.__name__}")
                return result
            except Exception as e:
                logger.error(f"Error in {func.__name__}: {str(e)}")
                raise
        return wrapper
    return decorator
