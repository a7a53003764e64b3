"""
db/models/individual.py

Member of a tenant's organisation who can be assigned to plans.
"""

import uuid

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class Individual(Base, TimestampMixin):
    __tablename__ = "individuals"

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
    external_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Identifier used by the tenant's source systems (employee number)",
    )
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Free-text role matched against plan variant names",
    )
    org_unit_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Branch/store reference for org-unit fallback data",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_individuals_tenant_external_id"),
        Index("ix_individuals_tenant_id", "tenant_id"),
        Index("ix_individuals_tenant_org_unit", "tenant_id", "org_unit_ref"),
    )

    def __repr__(self) -> str:
        return f"<Individual id={self.id} role={self.role!r} org_unit={self.org_unit_ref!r}>"
