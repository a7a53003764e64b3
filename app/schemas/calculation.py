"""
Schemas for calculation run, batch and lifecycle endpoints.

Money fields are rounded to cents here and nowhere earlier.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from compensation.numeric import quantize_money, to_decimal


class _MoneyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("total_payout", "payout", mode="before", check_fields=False)
    @classmethod
    def _round_money(cls, value: Any) -> Any:
        amount = to_decimal(value)
        if amount is None:
            return value
        return quantize_money(amount)


class CalculationRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: UUID = Field(alias="tenantId")
    period_id: UUID = Field(alias="periodId")
    plan_id: UUID = Field(alias="planId")


class CalculationCancelRequest(CalculationRunRequest):
    pass


class CalculationCancelResponse(BaseModel):
    cancelled: bool


class ComponentPayoutResponse(_MoneyModel):
    component_id: str
    name: str
    component_type: str
    payout: Decimal
    outcome: str
    trace_mode: str | None = None
    trace: dict[str, Any] | None = None


class IndividualResultResponse(_MoneyModel):
    individual_id: UUID
    external_id: str | None = None
    total_payout: Decimal
    variant_id: str | None = None
    variant_name: str | None = None
    excluded_reason: str | None = None
    components: list[ComponentPayoutResponse] = Field(default_factory=list)
    log: list[str] = Field(default_factory=list)


class CalculationRunResponse(_MoneyModel):
    batch_id: UUID
    lifecycle_state: str
    individual_count: int
    total_payout: Decimal
    results: list[IndividualResultResponse] = Field(default_factory=list)
    aggregates: dict[str, Any] = Field(default_factory=dict)
    anomalies: list[dict[str, Any]] = Field(default_factory=list)
    exclusions: list[dict[str, Any]] = Field(default_factory=list)
    issues: list[dict[str, Any]] = Field(default_factory=list)
    superseded_batch_id: UUID | None = None


class BatchSummaryResponse(_MoneyModel):
    batch_id: UUID
    tenant_id: UUID
    period_id: UUID
    plan_id: UUID
    lifecycle_state: str
    individual_count: int
    total_payout: Decimal
    supersedes: UUID | None = None
    superseded_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


class BatchListResponse(BaseModel):
    batches: list[BatchSummaryResponse] = Field(default_factory=list)


class BatchDetailResponse(BatchSummaryResponse):
    summary: dict[str, Any] = Field(default_factory=dict)
    results_visible: bool = True
    results: list[IndividualResultResponse] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_state: str = Field(alias="targetState", min_length=1)
    reason: str | None = None
    payment_reference: str | None = Field(default=None, alias="paymentReference")


class TransitionEntryResponse(BaseModel):
    from_state: str | None = None
    to_state: str
    actor_id: str
    reason: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class TransitionHistoryResponse(BaseModel):
    batch_id: UUID
    lifecycle_state: str
    valid_transitions: list[str] = Field(default_factory=list)
    transitions: list[TransitionEntryResponse] = Field(default_factory=list)
