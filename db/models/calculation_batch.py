"""
db/models/calculation_batch.py

Calculation batches and their per-individual results.

A batch is the immutable output of one run for a (tenant, period, plan)
key. Re-running the same key creates a new batch and points the previous
one at it through ``superseded_by``; the previous batch is kept for audit.
"The current batch" for a key is the one with ``superseded_by`` null.

Only ``lifecycle_state``, ``superseded_by`` and the lifecycle stamps inside
``summary`` change after a batch is written.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, BigIntegerPK, JSONType, Money, TimestampMixin


class CalculationBatch(Base, TimestampMixin):
    __tablename__ = "calculation_batches"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("periods.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
    )
    lifecycle_state: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="compensation.lifecycle.LifecycleState value",
    )
    individual_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_payout: Mapped[Decimal] = mapped_column(Money, nullable=False)
    summary: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Aggregates, anomaly manifest, exclusions and lifecycle stamps",
    )
    supersedes: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("calculation_batches.id", ondelete="SET NULL"),
        nullable=True,
    )
    superseded_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("calculation_batches.id", ondelete="SET NULL"),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────────

    results: Mapped[list[CalculationResult]] = relationship(
        "CalculationResult",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CalculationResult.position",
    )
    transitions: Mapped[list[LifecycleTransition]] = relationship(
        "LifecycleTransition",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LifecycleTransition.id",
    )

    # ── Indexes ────────────────────────────────────────────────────────────────

    __table_args__ = (
        Index("ix_calculation_batches_key", "tenant_id", "period_id", "plan_id"),
        Index("ix_calculation_batches_key_current", "tenant_id", "period_id", "plan_id", "superseded_by"),
        Index("ix_calculation_batches_lifecycle_state", "lifecycle_state"),
    )

    @property
    def is_current(self) -> bool:
        return self.superseded_by is None

    def __repr__(self) -> str:
        return (
            f"<CalculationBatch id={self.id} state={self.lifecycle_state!r} "
            f"individuals={self.individual_count} total={self.total_payout}>"
        )


class CalculationResult(Base):
    __tablename__ = "calculation_results"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("calculation_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    individual_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("individuals.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Order of the individual within the batch",
    )
    total_payout: Mapped[Decimal] = mapped_column(Money, nullable=False)
    variant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    variant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    org_unit_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    excluded_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    components: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Ordered per-component payout, metrics and trace",
    )
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    log: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    batch: Mapped[CalculationBatch] = relationship("CalculationBatch", back_populates="results")

    __table_args__ = (
        UniqueConstraint("batch_id", "individual_id", name="uq_calculation_results_batch_individual"),
        Index("ix_calculation_results_batch_id", "batch_id"),
        Index("ix_calculation_results_individual_id", "individual_id"),
    )


class LifecycleTransition(Base):
    """
    Audit trail entry for one batch state change.
    """

    __tablename__ = "lifecycle_transitions"

    id: Mapped[int] = mapped_column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("calculation_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    batch: Mapped[CalculationBatch] = relationship("CalculationBatch", back_populates="transitions")

    __table_args__ = (Index("ix_lifecycle_transitions_batch_id", "batch_id"),)
