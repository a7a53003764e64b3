"""
app/services/density_service.py

Density inspection, nuclear clear and correction feedback.

Batch runs update density inside their own transaction (see
``CalculationOrchestrator``); this service covers the operator-facing
operations, each committed on its own.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from functools import lru_cache

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_density_settings
from compensation.density import DensityObservation, DensityState, PatternDensityTracker
from db.repositories.density_repository import DensityRepository
from db.repositories.plan_repository import PlanRepository

logger = logging.getLogger(__name__)


class DensityTenantNotFoundError(LookupError):
    """Raised when the tenant does not exist."""


class DensityPersistenceError(RuntimeError):
    """
    Raised when a density write cannot be committed.

    The session has been rolled back before this exception is raised.
    """


class DensityService:
    def __init__(self, tracker: PatternDensityTracker | None = None) -> None:
        self._tracker = tracker or PatternDensityTracker(get_density_settings().to_policy())

    @property
    def tracker(self) -> PatternDensityTracker:
        return self._tracker

    def get_density(self, *, tenant_id: uuid.UUID, db: Session) -> list[DensityState]:
        self._require_tenant(tenant_id, db)
        return DensityRepository(db).list_states(tenant_id)

    def clear(self, *, tenant_id: uuid.UUID, db: Session) -> int:
        """
        Reset every pattern of *tenant_id* back to ``full_trace``.

        Returns the number of signatures removed.
        """
        self._require_tenant(tenant_id, db)
        try:
            removed = DensityRepository(db).clear(tenant_id)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("DensityService.clear failed tenant_id=%s: %s", tenant_id, exc, exc_info=True)
            raise DensityPersistenceError(f"Failed to clear density for tenant {tenant_id}: {exc}") from exc

        logger.warning("Density cleared tenant_id=%s signatures_removed=%d", tenant_id, removed)
        return removed

    def record_corrections(
        self,
        *,
        tenant_id: uuid.UUID,
        corrections: Mapping[str, int],
        db: Session,
    ) -> list[DensityState]:
        """
        Feed user corrections back into density.

        Each positive count decays the signature's confidence and forces
        ``full_trace`` for its next run. Zero counts are ignored.
        """
        self._require_tenant(tenant_id, db)
        observations = [
            DensityObservation(signature=signature, executions=0, corrections=count)
            for signature, count in sorted(corrections.items())
            if count > 0
        ]
        if not observations:
            return []

        try:
            updated = DensityRepository(db).apply(tenant_id, observations, self._tracker)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "DensityService.record_corrections failed tenant_id=%s: %s",
                tenant_id,
                exc,
                exc_info=True,
            )
            raise DensityPersistenceError(f"Failed to record corrections for tenant {tenant_id}: {exc}") from exc

        logger.info(
            "Density corrections recorded tenant_id=%s signatures=%d",
            tenant_id,
            len(updated),
        )
        return updated

    def _require_tenant(self, tenant_id: uuid.UUID, db: Session) -> None:
        if PlanRepository(db).get_tenant(tenant_id) is None:
            raise DensityTenantNotFoundError(f"Tenant {tenant_id} not found")


@lru_cache(maxsize=1)
def get_density_service() -> DensityService:
    """
    Return a shared density service configured from the environment.
    """

    return DensityService()
