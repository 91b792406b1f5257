"""
Error taxonomy and the error-handling decorators for chatdesk.
"""
import functools
import time
from typing import Any, Callable, Optional, Type, Union, Tuple

from .logger import get_logger

__all__ = [
    "ProviderError",
    "StorageError",
    "ChatNotFoundError",
    "ValidationError",
    "handle_exceptions",
    "retry",
]

logger = get_logger(__name__)


class ProviderError(Exception):
    """The language-model provider rejected the exchange or could not be reached."""
    pass


class StorageError(Exception):
    """A read or write against the chat history store failed."""
    pass


class ChatNotFoundError(StorageError):
    """The addressed chat does not exist (anymore)."""

    def __init__(self, chat_id: int):
        super().__init__(f"Chat {chat_id} not found")
        self.chat_id = chat_id


class ValidationError(ValueError):
    """Malformed input, rejected before any I/O takes place."""
    pass


def handle_exceptions(
    error_types: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    default_value: Any = None,
    on_error: Optional[Callable[..., None]] = None,
) -> Callable:
    """Decorator to handle exceptions and return a default value.

    ``on_error`` is called with the exception followed by the wrapped call's
    own arguments, so callers can report the failure before it is absorbed.
    Exceptions outside ``error_types`` propagate unchanged.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except error_types as e:
                logger.error(f"Error in {func.__name__}: {str(e)}")
                if on_error is not None:
                    on_error(e, *args, **kwargs)
                return default_value
        return wrapper
    return decorator


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception
) -> Callable:
    """Decorator to retry a function on failure.

    The last exception is re-raised once ``max_attempts`` is exhausted.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            current_delay = delay

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt >= max_attempts:
                        logger.error(f"Final retry attempt failed for {func.__name__}: {str(e)}")
                        raise

                    logger.warning(f"Attempt {attempt} failed for {func.__name__}: {str(e)}")
                    logger.info(f"Retrying in {current_delay} seconds...")
                    time.sleep(current_delay)
                    current_delay *= backoff
        return wrapper
    return decorator
