"""
db/models/period.py

Calculation period (e.g. a month) owned by a tenant.
"""

import uuid
from datetime import date

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class Period(Base, TimestampMixin):
    __tablename__ = "periods"

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
    label: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Display key, e.g. 2024-01",
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "label", name="uq_periods_tenant_label"),
        Index("ix_periods_tenant_id", "tenant_id"),
    )

    def __repr__(self) -> str:
        return f"<Period id={self.id} label={self.label!r}>"
