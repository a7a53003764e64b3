"""
Retry logic for transient database failures during batch persistence.

Retries only on errors the database reports as transient (lost connection,
statement timeout, lock/serialisation conflicts, insert races on unique
keys). Anything else is raised immediately.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError

from app.config import PersistenceSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (OperationalError, IntegrityError)


class PersistenceRetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error.

    Attributes:
        attempts: Total number of attempts made (initial + retries).
        last_error: The error from the final attempt.
        history: Errors from every failed attempt.
    """

    def __init__(self, attempts: int, last_error: Exception, history: list[Exception]) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
        super().__init__(
            f"Persistence failed after {attempts} attempt(s). Last error: {last_error}"
        )


def run_with_retry(
    operation: Callable[[], T],
    *,
    settings: PersistenceSettings,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` until it succeeds or retries are exhausted.

    ``operation`` must leave the session rolled back when it raises so the
    next attempt starts from a clean transaction.

    Args:
        operation: Zero-argument callable performing one full attempt.
        settings: Retry count and exponential backoff parameters.
        description: Label used in log lines.
        sleep: Injected for tests.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        PersistenceRetryExhaustedError: If all attempts fail with retryable errors.
        Exception: Any non-retryable error from ``operation``, unchanged.
    """
    errors: list[Exception] = []
    total_attempts = 1 + settings.max_retries
    delay = settings.backoff_initial_seconds

    for attempt in range(1, total_attempts + 1):
        try:
            result = operation()
            if attempt > 1:
                logger.info("%s succeeded on attempt %d/%d", description, attempt, total_attempts)
            return result
        except _RETRYABLE_ERRORS as exc:
            errors.append(exc)
            logger.warning(
                "%s attempt %d/%d failed: %s",
                description,
                attempt,
                total_attempts,
                exc,
            )
            if attempt < total_attempts and delay > 0:
                sleep(delay)
            delay *= settings.backoff_multiplier

    raise PersistenceRetryExhaustedError(
        attempts=total_attempts,
        last_error=errors[-1],
        history=errors,
    )
