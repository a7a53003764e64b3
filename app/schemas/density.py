"""
Schemas for pattern density endpoints.
"""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class DensityStateResponse(BaseModel):
    signature: str
    confidence: float
    execution_mode: str
    total_executions: int
    last_anomaly_rate: float
    last_correction_count: int


class DensityListResponse(BaseModel):
    tenant_id: UUID
    patterns: list[DensityStateResponse] = Field(default_factory=list)


class DensityClearResponse(BaseModel):
    tenant_id: UUID
    removed: int


class CorrectionsRequest(BaseModel):
    corrections: dict[str, int] = Field(
        default_factory=dict,
        description="Correction count per pattern signature",
    )
