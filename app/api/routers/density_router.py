"""
app/api/routers/density_router.py

Pattern density inspection, reset and correction feedback.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.dependencies import Actor, get_actor
from app.schemas.density import (
    CorrectionsRequest,
    DensityClearResponse,
    DensityListResponse,
    DensityStateResponse,
)
from app.services.density_service import (
    DensityPersistenceError,
    DensityService,
    DensityTenantNotFoundError,
    get_density_service,
)
from compensation.density import DensityState
from compensation.lifecycle import Capability
from db.session import get_db

router = APIRouter(prefix="/density", tags=["density"])


@router.get("/{tenant_id}", response_model=DensityListResponse)
def get_density(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    service: DensityService = Depends(get_density_service),
) -> DensityListResponse:
    try:
        states = service.get_density(tenant_id=tenant_id, db=db)
    except DensityTenantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return DensityListResponse(tenant_id=tenant_id, patterns=[_to_response(s) for s in states])


@router.delete("/{tenant_id}", response_model=DensityClearResponse)
def clear_density(
    tenant_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    service: DensityService = Depends(get_density_service),
) -> DensityClearResponse:
    """
    Forget every learned pattern of the tenant. All signatures return to
    ``full_trace`` on the next run.
    """
    if Capability.MANAGE_TENANTS not in actor.capabilities:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Actor {actor.actor_id!r} may not clear density.",
        )
    try:
        removed = service.clear(tenant_id=tenant_id, db=db)
    except DensityTenantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DensityPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return DensityClearResponse(tenant_id=tenant_id, removed=removed)


@router.post("/{tenant_id}/corrections", response_model=DensityListResponse)
def record_corrections(
    tenant_id: UUID,
    body: CorrectionsRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    service: DensityService = Depends(get_density_service),
) -> DensityListResponse:
    try:
        updated = service.record_corrections(tenant_id=tenant_id, corrections=body.corrections, db=db)
    except DensityTenantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DensityPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return DensityListResponse(tenant_id=tenant_id, patterns=[_to_response(s) for s in updated])


def _to_response(state: DensityState) -> DensityStateResponse:
    return DensityStateResponse(**state.to_dict())
