"""
db/repositories/calculation_repository.py

Persistence layer for calculation batches, results and lifecycle audit rows.

All methods are transaction-safe. The caller controls commit/rollback;
this repository never commits on its own.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from db.models.calculation_batch import CalculationBatch, CalculationResult, LifecycleTransition


class CalculationRepository:
    """
    Repository for writing and querying calculation batches.

    A batch and its results are added in one call so the caller can commit
    them as a unit.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def create_batch(
        self,
        *,
        tenant_id: uuid.UUID,
        period_id: uuid.UUID,
        plan_id: uuid.UUID,
        lifecycle_state: str,
        total_payout: Decimal,
        summary: dict[str, Any],
        results: Sequence[dict[str, Any]],
        supersedes: uuid.UUID | None = None,
    ) -> CalculationBatch:
        """
        Add a batch with all of its result rows and flush.

        Each element of ``results`` carries the ``CalculationResult`` column
        values except ``batch_id`` and ``position``, which are assigned here.

        Returns
        -------
        CalculationBatch
            The flushed (not committed) batch.
        """
        batch = CalculationBatch(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            period_id=period_id,
            plan_id=plan_id,
            lifecycle_state=lifecycle_state,
            individual_count=len(results),
            total_payout=total_payout,
            summary=summary,
            supersedes=supersedes,
        )
        batch.results = [
            CalculationResult(position=position, **payload)
            for position, payload in enumerate(results)
        ]
        self._session.add(batch)
        self._session.flush()
        return batch

    def mark_superseded(self, batch: CalculationBatch, *, superseded_by: uuid.UUID) -> CalculationBatch:
        batch.superseded_by = superseded_by
        return batch

    def set_state(
        self,
        batch: CalculationBatch,
        *,
        state: str,
        stamps: dict[str, Any] | None = None,
    ) -> CalculationBatch:
        batch.lifecycle_state = state
        if stamps:
            summary = dict(batch.summary or {})
            lifecycle = dict(summary.get("lifecycle") or {})
            lifecycle.update(stamps)
            summary["lifecycle"] = lifecycle
            # Reassign so the JSON column is flagged dirty.
            batch.summary = summary
        return batch

    def add_transition(
        self,
        *,
        batch_id: uuid.UUID,
        from_state: str | None,
        to_state: str,
        actor_id: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> LifecycleTransition:
        entry = LifecycleTransition(
            batch_id=batch_id,
            from_state=from_state,
            to_state=to_state,
            actor_id=actor_id,
            reason=reason,
            details=details,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_batch(self, batch_id: uuid.UUID, *, for_update: bool = False) -> CalculationBatch | None:
        if for_update:
            stmt = select(CalculationBatch).where(CalculationBatch.id == batch_id).with_for_update()
            return self._session.scalars(stmt).one_or_none()
        return self._session.get(CalculationBatch, batch_id)

    def get_current_batch(
        self,
        *,
        tenant_id: uuid.UUID,
        period_id: uuid.UUID,
        plan_id: uuid.UUID,
        for_update: bool = False,
    ) -> CalculationBatch | None:
        """
        The batch for the key that nothing supersedes, if any.
        """
        stmt = select(CalculationBatch).where(
            CalculationBatch.tenant_id == tenant_id,
            CalculationBatch.period_id == period_id,
            CalculationBatch.plan_id == plan_id,
            CalculationBatch.superseded_by.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def list_batches(
        self,
        *,
        tenant_id: uuid.UUID,
        period_id: uuid.UUID | None = None,
        plan_id: uuid.UUID | None = None,
        include_superseded: bool = False,
        limit: int = 100,
    ) -> list[CalculationBatch]:
        stmt: Select[tuple[CalculationBatch]] = select(CalculationBatch).where(
            CalculationBatch.tenant_id == tenant_id
        )
        if period_id is not None:
            stmt = stmt.where(CalculationBatch.period_id == period_id)
        if plan_id is not None:
            stmt = stmt.where(CalculationBatch.plan_id == plan_id)
        if not include_superseded:
            stmt = stmt.where(CalculationBatch.superseded_by.is_(None))

        stmt = stmt.order_by(CalculationBatch.created_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def list_results(self, batch_id: uuid.UUID) -> list[CalculationResult]:
        stmt = (
            select(CalculationResult)
            .where(CalculationResult.batch_id == batch_id)
            .order_by(CalculationResult.position)
        )
        return list(self._session.scalars(stmt).all())

    def list_transitions(self, batch_id: uuid.UUID) -> list[LifecycleTransition]:
        stmt = (
            select(LifecycleTransition)
            .where(LifecycleTransition.batch_id == batch_id)
            .order_by(LifecycleTransition.id)
        )
        return list(self._session.scalars(stmt).all())
