"""Retry utilities with exponential backoff."""

import time
from functools import wraps
from typing import Callable, Tuple, Type

import structlog

log = structlog.stdlib.get_logger()


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (zero based)."""
    return min(base_delay * (2**attempt), max_delay)


def exponential_backoff_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable:
    """
    Decorator that retries a function with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry
        retry_if: Optional predicate; a caught exception for which it returns
            False is re-raised immediately
        sleep: Sleep function, replaceable in tests

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        log.error(
                            "non_retryable_error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise

                    if attempt == max_retries:
                        log.error(
                            "max_retries_reached",
                            function=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay)

                    log.warning(
                        "retrying_after_error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                    )

                    sleep(delay)

        return wrapper

    return decorator


def is_retryable(error: Exception) -> bool:
    """Retry predicate for sync errors carrying a ``retryable`` flag."""
    return bool(getattr(error, "retryable", False))
