"""
db/models/pattern_density.py

Persisted pattern density state, one row per (tenant, signature).

This is the only long-lived mutable state the payout core owns. Rows are
updated once per batch through ``DensityRepository.apply``.
"""

import uuid

from sqlalchemy import Float, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class PatternDensity(Base, TimestampMixin):
    __tablename__ = "pattern_density"

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
    signature: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        comment="plan:variant:component:type",
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    execution_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    total_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_anomaly_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_correction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "signature", name="uq_pattern_density_tenant_signature"),
        Index("ix_pattern_density_tenant_id", "tenant_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PatternDensity signature={self.signature!r} "
            f"confidence={self.confidence:.3f} mode={self.execution_mode!r}>"
        )
