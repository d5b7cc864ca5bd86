"""Bounded retry for transient storage faults.

Only contention and connectivity failures are retried; integrity errors and
everything else propagate on the first attempt. Once attempts are exhausted
the fault surfaces as TransientStorageError so callers can decide to retry
the whole user action.
"""
import functools
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_storage_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def _log_retry(operation: str):
    def before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "[storage] transient failure, retrying",
            extra={
                "operation": operation,
                "attempt": retry_state.attempt_number,
                "error_code": type(exc).__name__ if exc else None,
            },
        )
    return before_sleep


def run_with_storage_retry(fn: Callable[..., T], *args, operation: str, **kwargs) -> T:
    """Call fn, retrying transient storage faults with exponential backoff."""
    retrying = Retrying(
        stop=stop_after_attempt(max(1, settings.STORAGE_RETRY_ATTEMPTS)),
        wait=wait_exponential(
            multiplier=settings.STORAGE_RETRY_MIN_WAIT_SECONDS,
            min=settings.STORAGE_RETRY_MIN_WAIT_SECONDS,
            max=settings.STORAGE_RETRY_MAX_WAIT_SECONDS,
        ),
        retry=retry_if_exception(is_transient_storage_error),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except DBAPIError as exc:
        if not is_transient_storage_error(exc):
            raise
        logger.error(
            "[storage] retries exhausted",
            extra={"operation": operation, "attempt": settings.STORAGE_RETRY_ATTEMPTS, "error_code": type(exc).__name__},
        )
        raise TransientStorageError(f"Storage unavailable during {operation}; retry later") from exc


def storage_retry(operation: str):
    """Decorator form of run_with_storage_retry."""
    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return run_with_storage_retry(fn, *args, operation=operation, **kwargs)
        return wrapper
    return decorator
