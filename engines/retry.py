"""Retry helpers for calls to external services."""

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryExhaustedError(Exception):
    """Raised when retry attempts are exhausted."""
    pass


def with_retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for retrying a call with exponential backoff.

    Only ``exceptions`` are retried; anything else propagates immediately.
    When every attempt fails, ``RetryExhaustedError`` is raised from the
    last underlying exception.
    """

    attempts = max(1, int(max_retries))

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            name = getattr(func, "__name__", type(func).__name__)
            delay = initial_delay
            last_exception: Optional[Exception] = None

            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    logger.warning(
                        "%s failed (attempt %d/%d): %s", name, attempt + 1, attempts, e
                    )

                    if attempt < attempts - 1:
                        sleep(min(delay, max_delay))
                        delay *= backoff_factor

            raise RetryExhaustedError(
                f"{name} failed after {attempts} attempts"
            ) from last_exception

        return wrapper
    return decorator


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Run ``func`` once with the retry policy of :func:`with_retry`."""
    wrapped = with_retry(
        max_retries=max_retries,
        initial_delay=initial_delay,
        exceptions=exceptions,
        sleep=sleep,
    )(func)
    return wrapped(*args, **kwargs)
