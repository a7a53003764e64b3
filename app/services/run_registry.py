"""
In-flight run registry.

At most one calculation may run per (tenant, period, plan) key inside this
process. A second request for a busy key is rejected, never queued. Each
claim carries a cancellation event that stays effective until the batch
write begins.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunKey:
    tenant_id: uuid.UUID
    period_id: uuid.UUID
    plan_id: uuid.UUID

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.period_id}/{self.plan_id}"


class CalculationAlreadyRunningError(RuntimeError):
    """
    Raised when a run is requested for a key that already has one in flight.
    """

    def __init__(self, key: RunKey) -> None:
        super().__init__(f"A calculation is already running for {key}")
        self.key = key


class RunRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[RunKey, threading.Event] = {}

    @contextmanager
    def claim(self, key: RunKey) -> Iterator[threading.Event]:
        """
        Hold *key* for the duration of the ``with`` block.

        Yields the cancellation event for the run.

        Raises
        ------
        CalculationAlreadyRunningError
            If *key* is already claimed.
        """
        with self._lock:
            if key in self._active:
                raise CalculationAlreadyRunningError(key)
            event = threading.Event()
            self._active[key] = event
        logger.debug("RunRegistry claimed key=%s", key)
        try:
            yield event
        finally:
            with self._lock:
                self._active.pop(key, None)
            logger.debug("RunRegistry released key=%s", key)

    def cancel(self, key: RunKey) -> bool:
        """Signal cancellation; returns False when nothing is running for *key*."""
        with self._lock:
            event = self._active.get(key)
        if event is None:
            return False
        event.set()
        logger.info("RunRegistry cancellation requested key=%s", key)
        return True

    def is_running(self, key: RunKey) -> bool:
        with self._lock:
            return key in self._active


@lru_cache(maxsize=1)
def get_run_registry() -> RunRegistry:
    """
    Return the process-wide run registry.
    """

    return RunRegistry()
