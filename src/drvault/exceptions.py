"""
Custom exception classes for the backup engine.
Provides the error taxonomy used to decide what is retried, what is fatal
for a cycle and what is only reported.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class BaseApplicationException(Exception):
    """Base exception class for all application exceptions."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize base exception.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for summaries and reports."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class BackupError(BaseApplicationException):
    """Base exception for backup engine errors."""

    pass


class TransientIOError(BackupError):
    """Source or remote temporarily unreachable; retried with backoff."""

    retryable = True


class IntegrityError(BackupError):
    """Checksum or format mismatch; the artifact is quarantined, never retried."""

    def __init__(self, message: str, artifact_id: str | None = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        if artifact_id:
            details["artifact_id"] = artifact_id
        kwargs["details"] = details
        super().__init__(message, **kwargs)


class CapacityError(BackupError):
    """Disk or quota exhausted; fatal for the current cycle."""

    def __init__(
        self,
        message: str,
        required_bytes: int | None = None,
        available_bytes: int | None = None,
        **kwargs: Any
    ) -> None:
        details = kwargs.get("details", {})
        if required_bytes is not None:
            details["required_bytes"] = required_bytes
        if available_bytes is not None:
            details["available_bytes"] = available_bytes
        kwargs["details"] = details
        super().__init__(message, **kwargs)


class ConsistencyDrift(BackupError):
    """Primary and secondary region contents disagree."""

    def __init__(self, message: str, mismatched_ids: list[str] | None = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        details["mismatched_ids"] = list(mismatched_ids or [])
        kwargs["details"] = details
        super().__init__(message, **kwargs)


class ConfigurationError(BackupError):
    """Raised when configuration is invalid or a required parameter is missing."""

    def __init__(self, message: str, missing: list[str] | None = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        if missing:
            details["missing"] = missing
        kwargs["details"] = details
        super().__init__(message, **kwargs)


class InvalidTransition(BackupError):
    """Raised when an artifact status change is not allowed or lost a compare-and-set race."""

    pass


class LockUnavailable(BackupError):
    """Raised when a job type is already running elsewhere."""

    pass


def retry_on_error(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: type[Exception] | tuple[type[Exception], ...] = TransientIOError,
):
    """
    Decorator to retry an async function on specific exceptions.

    Args:
        max_retries: Maximum number of retry attempts after the first call
        delay: Initial delay between retries (seconds)
        backoff: Backoff multiplier for delay
        exceptions: Exception types to retry on
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise
                    logger.warning(
                        f"Retrying {func.__name__} after error: {e} "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    await asyncio.sleep(current_delay)
                    current_delay *= backoff

        return async_wrapper  # type: ignore[return-value]
    return decorator


async def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: type[Exception] | tuple[type[Exception], ...] = TransientIOError,
    **kwargs: Any
) -> Any:
    """Run an awaitable factory under :func:`retry_on_error` with runtime settings."""
    wrapped = retry_on_error(max_retries, delay, backoff, exceptions)(func)
    return await wrapped(*args, **kwargs)


async def with_timeout(awaitable: Any, timeout: float, operation: str) -> Any:
    """Await with a bounded timeout; a timeout surfaces as :class:`TransientIOError`."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientIOError(
            f"{operation} timed out after {timeout:.0f}s",
            details={"operation": operation, "timeout_seconds": timeout},
        ) from e
