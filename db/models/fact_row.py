"""
db/models/fact_row.py

Imported operational records.

Rows are written by the ingestion side and never updated. The integer
primary key records commit order, which the metric resolver uses as its
summation order. ``individual_id`` is null for org-unit-level rows (e.g. a
store's deposit balances shared by all of its staff).
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, BigIntegerPK, JSONType


class FactRow(Base):
    __tablename__ = "fact_rows"

    id: Mapped[int] = mapped_column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
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
    individual_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("individuals.id", ondelete="SET NULL"),
        nullable=True,
        comment="Null for org-unit-level rows",
    )
    org_unit_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fact_type: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Semantic category, e.g. loan_disbursements",
    )
    fields: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Tenant-specific column name -> scalar",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_fact_rows_tenant_period", "tenant_id", "period_id"),
        Index("ix_fact_rows_tenant_period_individual", "tenant_id", "period_id", "individual_id"),
        Index("ix_fact_rows_tenant_period_org_unit", "tenant_id", "period_id", "org_unit_ref"),
    )
