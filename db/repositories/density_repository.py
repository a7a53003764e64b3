"""
db/repositories/density_repository.py

Persistence for pattern density state.

``apply`` is the single write path: it locks each signature's row with
``SELECT ... FOR UPDATE`` in signature order, runs the pure tracker update
and writes the result back. Concurrent writers for the same signature are
therefore serialised by the database; a race on first insert surfaces as an
``IntegrityError`` and the caller's transaction retry handles it.

The repository never commits.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from compensation.density import DensityObservation, DensityState, PatternDensityTracker
from db.models.pattern_density import PatternDensity


def _to_state(row: PatternDensity) -> DensityState:
    return DensityState(
        signature=row.signature,
        confidence=row.confidence,
        execution_mode=row.execution_mode,
        total_executions=row.total_executions,
        last_anomaly_rate=row.last_anomaly_rate,
        last_correction_count=row.last_correction_count,
    )


class DensityRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list_states(self, tenant_id: uuid.UUID) -> list[DensityState]:
        stmt = (
            select(PatternDensity)
            .where(PatternDensity.tenant_id == tenant_id)
            .order_by(PatternDensity.signature)
        )
        return [_to_state(row) for row in self._session.scalars(stmt).all()]

    def get_states(self, tenant_id: uuid.UUID, signatures: Iterable[str]) -> dict[str, DensityState]:
        wanted = sorted(set(signatures))
        if not wanted:
            return {}
        stmt = select(PatternDensity).where(
            PatternDensity.tenant_id == tenant_id,
            PatternDensity.signature.in_(wanted),
        )
        return {row.signature: _to_state(row) for row in self._session.scalars(stmt).all()}

    def apply(
        self,
        tenant_id: uuid.UUID,
        observations: Sequence[DensityObservation],
        tracker: PatternDensityTracker,
    ) -> list[DensityState]:
        """
        Fold *observations* into stored state, one signature at a time.

        Observations for the same signature are expected to be merged
        beforehand (see ``compensation.density.merge_observations``).
        """
        updated: list[DensityState] = []
        for observation in sorted(observations, key=lambda o: o.signature):
            stmt = (
                select(PatternDensity)
                .where(
                    PatternDensity.tenant_id == tenant_id,
                    PatternDensity.signature == observation.signature,
                )
                .with_for_update()
            )
            row = self._session.scalars(stmt).one_or_none()
            prior = None if row is None else _to_state(row)
            state = tracker.update(prior, observation)

            if row is None:
                row = PatternDensity(tenant_id=tenant_id, signature=state.signature)
                self._session.add(row)
            row.confidence = state.confidence
            row.execution_mode = state.execution_mode
            row.total_executions = state.total_executions
            row.last_anomaly_rate = state.last_anomaly_rate
            row.last_correction_count = state.last_correction_count
            updated.append(state)

        self._session.flush()
        return updated

    def clear(self, tenant_id: uuid.UUID) -> int:
        """Delete every density row of a tenant. Returns the number removed."""
        result = self._session.execute(delete(PatternDensity).where(PatternDensity.tenant_id == tenant_id))
        return int(result.rowcount or 0)
