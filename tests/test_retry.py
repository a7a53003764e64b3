"""
tests/test_retry.py

Retry wrapper around the batch write.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.config import PersistenceSettings
from app.services.retry import PersistenceRetryExhaustedError, run_with_retry


def _operational() -> OperationalError:
    return OperationalError("INSERT INTO calculation_batches", {}, Exception("server closed the connection"))


class _Flaky:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "written"


@pytest.fixture()
def sleeps() -> list[float]:
    return []


def test_succeeds_after_transient_failures(sleeps) -> None:
    operation = _Flaky([_operational(), IntegrityError("stmt", {}, Exception("duplicate key"))])
    settings = PersistenceSettings(max_retries=3, backoff_initial_seconds=0.5, backoff_multiplier=2.0)

    result = run_with_retry(operation, settings=settings, description="test", sleep=sleeps.append)

    assert result == "written"
    assert operation.calls == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_raise_with_history(sleeps) -> None:
    operation = _Flaky([_operational() for _ in range(5)])
    settings = PersistenceSettings(max_retries=2, backoff_initial_seconds=0.1)

    with pytest.raises(PersistenceRetryExhaustedError) as excinfo:
        run_with_retry(operation, settings=settings, description="test", sleep=sleeps.append)

    assert excinfo.value.attempts == 3
    assert len(excinfo.value.history) == 3
    assert operation.calls == 3
    assert len(sleeps) == 2


def test_non_retryable_error_propagates_immediately(sleeps) -> None:
    operation = _Flaky([ValueError("bad payload")])

    with pytest.raises(ValueError):
        run_with_retry(operation, settings=PersistenceSettings(), description="test", sleep=sleeps.append)

    assert operation.calls == 1
    assert sleeps == []
