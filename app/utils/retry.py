"""
Retry utility functions with exponential backoff.
Categorizes errors as transient (retryable) or permanent (non-retryable) and
computes the back-off schedule used by the sync queue.
"""

import inspect
from collections.abc import Callable
from typing import TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.exceptions import ConfigurationError, IntegrityError, ResponseError, TransportError

logger = structlog.get_logger()

T = TypeVar("T")


class TransientError(Exception):
    """Raised for transient/retryable errors (network issues, rate limits, 5xx)."""

    pass


class PermanentError(Exception):
    """Raised for permanent/non-retryable errors (4xx validation errors, auth failures)."""

    pass


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception represents a transient error that should be retried.

    Args:
        exception: The exception to check

    Returns:
        True if error is transient (retryable), False otherwise
    """
    if isinstance(exception, TransientError | TransportError):
        return True

    if isinstance(exception, PermanentError | ConfigurationError | IntegrityError):
        return False

    # Network/connection errors are transient
    if isinstance(exception, httpx.TimeoutException | httpx.NetworkError | TimeoutError):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        return _is_transient_status(exception.response.status_code)

    if isinstance(exception, ResponseError):
        # Empty or unparseable 2xx bodies are protocol failures worth another attempt
        code = exception.status_code
        return code == 0 or 200 <= code < 300 or _is_transient_status(code)

    # Default to non-retryable for unknown errors
    return False


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def backoff_delay(
    retries: int,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 3600.0,
) -> float:
    """
    Delay before the next attempt of a job that has already been retried ``retries`` times.

    Args:
        retries: Number of attempts that already failed
        initial_delay: Delay of the first retry in seconds
        multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds
    """
    return min(initial_delay * (multiplier ** retries), max_delay)


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 60.0,
):
    """
    Decorator for retrying functions with exponential backoff.
    Only retries on transient errors. Works for plain and async functions.

    Args:
        max_attempts: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay in seconds

    Returns:
        Decorated function with retry logic
    """

    def retry_decorator(func: Callable[..., T]) -> Callable[..., T]:
        retrying = retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=multiplier, min=initial_delay, max=max_delay),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            before_sleep=_log_retry_attempt,
        )

        if inspect.iscoroutinefunction(func):

            @retrying
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    raise _classify(e) from e

            return async_wrapper

        @retrying
        def wrapper(*args, **kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                raise _classify(e) from e

        return wrapper

    return retry_decorator


def _classify(exception: Exception) -> Exception:
    if is_transient_error(exception):
        # Wrap as TransientError to trigger retry
        return TransientError(f"Transient error: {str(exception)}")
    return PermanentError(f"Permanent error: {str(exception)}")


def _log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is not None:
        exception = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient error",
            attempt=retry_state.attempt_number,
            exception=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )
