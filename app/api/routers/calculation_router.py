"""
app/api/routers/calculation_router.py

Calculation run, batch inspection and lifecycle endpoints.

Domain exceptions are translated to HTTP here:
    *NotFoundError                                  → 404
    PlanConfigurationError, NoEligibleIndividuals   → 422
    AlreadyRunning, BatchLocked, Cancelled, Transition → 409
    *PersistenceError                               → 500
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import Actor, get_actor
from app.config import get_calculation_settings
from app.schemas.calculation import (
    BatchDetailResponse,
    BatchListResponse,
    BatchSummaryResponse,
    CalculationCancelRequest,
    CalculationCancelResponse,
    CalculationRunRequest,
    CalculationRunResponse,
    ComponentPayoutResponse,
    IndividualResultResponse,
    TransitionEntryResponse,
    TransitionHistoryResponse,
    TransitionRequest,
)
from app.services.calculation_orchestrator import (
    CalculationCancelledError,
    CalculationNotFoundError,
    CalculationOrchestrator,
    CalculationPersistenceError,
    CalculationRunResult,
    NoEligibleIndividualsError,
)
from app.services.lifecycle_service import (
    BatchLockedError,
    BatchNotFoundError,
    LifecyclePersistenceError,
    LifecycleService,
    get_lifecycle_service,
)
from app.services.run_registry import (
    CalculationAlreadyRunningError,
    RunKey,
    RunRegistry,
    get_run_registry,
)
from compensation.errors import LifecycleTransitionError, PlanConfigurationError
from compensation.lifecycle import Capability, can_view_results, coerce_state, valid_transitions
from db.models.calculation_batch import CalculationBatch, CalculationResult
from db.repositories.calculation_repository import CalculationRepository
from db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calculations", tags=["calculations"])

_ADMIN_CAPABILITIES = frozenset({Capability.MANAGE_RULE_SETS, Capability.MANAGE_TENANTS})


def get_calculation_orchestrator() -> CalculationOrchestrator:
    return CalculationOrchestrator()


# ---------------------------------------------------------------------------
# Run / cancel
# ---------------------------------------------------------------------------


@router.post(
    "/run",
    response_model=CalculationRunResponse,
    status_code=status.HTTP_201_CREATED,
)
def run_calculation(
    body: CalculationRunRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    orchestrator: CalculationOrchestrator = Depends(get_calculation_orchestrator),
) -> CalculationRunResponse:
    """
    Calculate payouts for every individual on the plan and store a new
    PREVIEW batch, superseding the previous one for the same key.
    """
    _require_admin(actor)
    try:
        result = orchestrator.run(
            tenant_id=body.tenant_id,
            period_id=body.period_id,
            plan_id=body.plan_id,
            db=db,
        )
    except CalculationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PlanConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.to_dict(),
        ) from exc
    except NoEligibleIndividualsError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except (CalculationAlreadyRunningError, BatchLockedError, CalculationCancelledError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CalculationPersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Calculation failed: {exc}",
        ) from exc

    logger.info(
        "Calculation run by actor=%r batch_id=%s individuals=%d",
        actor.actor_id,
        result.batch_id,
        result.individual_count,
    )
    return _to_run_response(result, include_traces=get_calculation_settings().include_traces_in_response)


@router.post("/cancel", response_model=CalculationCancelResponse)
def cancel_calculation(
    body: CalculationCancelRequest,
    actor: Actor = Depends(get_actor),
    registry: RunRegistry = Depends(get_run_registry),
) -> CalculationCancelResponse:
    _require_admin(actor)
    key = RunKey(tenant_id=body.tenant_id, period_id=body.period_id, plan_id=body.plan_id)
    return CalculationCancelResponse(cancelled=registry.cancel(key))


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


@router.get("/batches", response_model=BatchListResponse)
def list_batches(
    tenant_id: UUID = Query(..., description="Tenant to list batches for"),
    period_id: UUID | None = Query(default=None),
    plan_id: UUID | None = Query(default=None),
    include_superseded: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> BatchListResponse:
    batches = CalculationRepository(db).list_batches(
        tenant_id=tenant_id,
        period_id=period_id,
        plan_id=plan_id,
        include_superseded=include_superseded,
        limit=limit,
    )
    visible = [b for b in batches if can_view_results(coerce_state(b.lifecycle_state), actor.capabilities)]
    return BatchListResponse(batches=[_to_summary(batch) for batch in visible])


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
def get_batch(
    batch_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> BatchDetailResponse:
    """
    Batch header, manifest and per-individual results.

    Results are withheld (``results_visible = false``) from actors who may
    not see the batch in its current state.
    """
    repository = CalculationRepository(db)
    batch = repository.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch not found: {batch_id}")

    visible = can_view_results(coerce_state(batch.lifecycle_state), actor.capabilities)
    results = repository.list_results(batch.id) if visible else []
    return BatchDetailResponse(
        **_to_summary(batch).model_dump(),
        summary=batch.summary if visible else {},
        results_visible=visible,
        results=[_stored_result(row) for row in results],
    )


@router.post("/batches/{batch_id}/transitions", response_model=BatchSummaryResponse)
def transition_batch(
    batch_id: UUID,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
) -> BatchSummaryResponse:
    try:
        batch = lifecycle.transition(
            batch_id=batch_id,
            target=body.target_state,
            actor_id=actor.actor_id,
            capabilities=actor.capabilities,
            db=db,
            reason=body.reason,
            payment_reference=body.payment_reference,
        )
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LifecycleTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=list(exc.errors)) from exc
    except LifecyclePersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return _to_summary(batch)


@router.get("/batches/{batch_id}/transitions", response_model=TransitionHistoryResponse)
def get_batch_history(
    batch_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
) -> TransitionHistoryResponse:
    batch = CalculationRepository(db).get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch not found: {batch_id}")

    state = coerce_state(batch.lifecycle_state)
    available = [] if batch.superseded_by is not None else sorted(s.value for s in valid_transitions(state))
    return TransitionHistoryResponse(
        batch_id=batch.id,
        lifecycle_state=batch.lifecycle_state,
        valid_transitions=available,
        transitions=[
            TransitionEntryResponse(**entry) for entry in lifecycle.history(batch_id=batch.id, db=db)
        ],
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_admin(actor: Actor) -> None:
    if not actor.capabilities & _ADMIN_CAPABILITIES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Actor {actor.actor_id!r} may not run calculations.",
        )


def _to_summary(batch: CalculationBatch) -> BatchSummaryResponse:
    return BatchSummaryResponse(
        batch_id=batch.id,
        tenant_id=batch.tenant_id,
        period_id=batch.period_id,
        plan_id=batch.plan_id,
        lifecycle_state=batch.lifecycle_state,
        individual_count=batch.individual_count,
        total_payout=batch.total_payout,
        supersedes=batch.supersedes,
        superseded_by=batch.superseded_by,
        created_at=batch.created_at,
        updated_at=batch.updated_at,
    )


def _stored_result(row: CalculationResult) -> IndividualResultResponse:
    components: list[dict[str, Any]] = row.components or []
    return IndividualResultResponse(
        individual_id=row.individual_id,
        total_payout=row.total_payout,
        variant_id=row.variant_id,
        variant_name=row.variant_name,
        excluded_reason=row.excluded_reason,
        components=[
            ComponentPayoutResponse(
                component_id=c["component_id"],
                name=c["name"],
                component_type=c["component_type"],
                payout=c["payout"],
                outcome=c["outcome"],
                trace_mode=c.get("trace_mode"),
                trace=c.get("trace"),
            )
            for c in components
        ],
        log=list(row.log or []),
    )


def _to_run_response(result: CalculationRunResult, *, include_traces: bool) -> CalculationRunResponse:
    return CalculationRunResponse(
        batch_id=result.batch_id,
        lifecycle_state=result.lifecycle_state,
        individual_count=result.individual_count,
        total_payout=result.total_payout,
        results=[
            IndividualResultResponse(
                individual_id=r.individual_id,
                external_id=r.external_id,
                total_payout=r.total_payout,
                variant_id=r.variant_id,
                variant_name=r.variant_name,
                excluded_reason=r.excluded_reason,
                components=[
                    ComponentPayoutResponse(
                        component_id=c.component_id,
                        name=c.name,
                        component_type=c.component_type,
                        payout=c.payout,
                        outcome=c.outcome,
                        trace_mode=c.trace_mode,
                        trace=c.trace if include_traces else None,
                    )
                    for c in r.components
                ],
                log=r.log,
            )
            for r in result.results
        ],
        aggregates=result.aggregates,
        anomalies=result.anomalies,
        exclusions=result.exclusions,
        issues=result.issues,
        superseded_batch_id=result.superseded_batch_id,
    )
