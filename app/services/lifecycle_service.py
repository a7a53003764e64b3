"""
app/services/lifecycle_service.py

Applies lifecycle transitions to stored batches.

Validation comes from ``compensation.lifecycle``; this service loads the
batch, records summary stamps and the audit entry, and commits. The
orchestrator reuses :meth:`LifecycleService.apply_system_transition` inside
its own batch transaction for the automatic DRAFT -> PREVIEW and
OFFICIAL -> SUPERSEDED moves.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from compensation.errors import LifecycleTransitionError
from compensation.lifecycle import (
    LOCKED_STATES,
    LifecycleState,
    coerce_state,
    require_transition,
    transition_stamps,
    valid_transitions,
)
from db.models.calculation_batch import CalculationBatch
from db.repositories.calculation_repository import CalculationRepository

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class BatchNotFoundError(LookupError):
    """Raised when a batch id does not exist."""


class BatchLockedError(RuntimeError):
    """
    Raised when a re-run would replace a batch that is already in approval
    or past it.
    """

    def __init__(self, batch_id: uuid.UUID, state: str) -> None:
        super().__init__(
            f"Batch {batch_id} is {state}; it can no longer be superseded by a re-run"
        )
        self.batch_id = batch_id
        self.state = state


class LifecyclePersistenceError(RuntimeError):
    """
    Raised when a transition cannot be committed. The session has been
    rolled back before this exception is raised.
    """


def is_locked(state: str) -> bool:
    return coerce_state(state) in LOCKED_STATES


class LifecycleService:
    def transition(
        self,
        *,
        batch_id: uuid.UUID,
        target: LifecycleState | str,
        actor_id: str,
        capabilities: Iterable[str],
        db: Session,
        reason: str | None = None,
        payment_reference: str | None = None,
    ) -> CalculationBatch:
        """
        Move a batch to *target* on behalf of *actor_id* and commit.

        Raises
        ------
        BatchNotFoundError
            If the batch does not exist.
        LifecycleTransitionError
            If the edge is invalid, the actor lacks the capability, the
            approver submitted the batch, or the batch is superseded.
        LifecyclePersistenceError
            If the commit fails.
        """
        repository = CalculationRepository(db)
        batch = repository.get_batch(batch_id, for_update=True)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        current = coerce_state(batch.lifecycle_state)
        target_state = coerce_state(target)
        if batch.superseded_by is not None:
            raise LifecycleTransitionError(
                [f"Batch {batch.id} was superseded by {batch.superseded_by} and can no longer change state"]
            )

        lifecycle_summary = (batch.summary or {}).get("lifecycle") or {}
        require_transition(
            current,
            target_state,
            actor_id=actor_id,
            capabilities=capabilities,
            submitted_by=lifecycle_summary.get("submitted_by"),
            reason=reason,
        )

        self._apply(
            repository,
            batch,
            target_state,
            actor_id=actor_id,
            reason=reason,
            payment_reference=payment_reference,
        )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "LifecycleService.transition commit failed batch_id=%s target=%s: %s",
                batch_id,
                target_state.value,
                exc,
                exc_info=True,
            )
            raise LifecyclePersistenceError(
                f"Failed to persist transition of batch {batch_id} to {target_state.value}: {exc}"
            ) from exc

        logger.info(
            "Batch transition batch_id=%s %s -> %s actor=%r",
            batch.id,
            current.value,
            target_state.value,
            actor_id,
        )
        return batch

    def apply_system_transition(
        self,
        repository: CalculationRepository,
        batch: CalculationBatch,
        target: LifecycleState,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Apply an engine-initiated transition without committing.

        Only the edge itself is validated; capabilities do not apply.
        """
        current = coerce_state(batch.lifecycle_state)
        if target not in valid_transitions(current):
            raise LifecycleTransitionError(
                [f"Invalid lifecycle transition: {current.value} -> {target.value}"]
            )
        self._apply(repository, batch, target, actor_id=SYSTEM_ACTOR, details=details)

    def history(self, *, batch_id: uuid.UUID, db: Session) -> list[dict[str, Any]]:
        repository = CalculationRepository(db)
        if repository.get_batch(batch_id) is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return [
            {
                "from_state": entry.from_state,
                "to_state": entry.to_state,
                "actor_id": entry.actor_id,
                "reason": entry.reason,
                "details": entry.details,
                "created_at": entry.created_at,
            }
            for entry in repository.list_transitions(batch_id)
        ]

    def _apply(
        self,
        repository: CalculationRepository,
        batch: CalculationBatch,
        target: LifecycleState,
        *,
        actor_id: str,
        reason: str | None = None,
        payment_reference: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        from_state = batch.lifecycle_state
        stamps = transition_stamps(
            target,
            actor_id=actor_id,
            at=datetime.now(timezone.utc),
            reason=reason,
            payment_reference=payment_reference,
        )
        repository.set_state(batch, state=target.value, stamps=stamps)
        repository.add_transition(
            batch_id=batch.id,
            from_state=from_state,
            to_state=target.value,
            actor_id=actor_id,
            reason=reason,
            details=details,
        )


@lru_cache(maxsize=1)
def get_lifecycle_service() -> LifecycleService:
    """
    Return a shared lifecycle service.
    """

    return LifecycleService()
