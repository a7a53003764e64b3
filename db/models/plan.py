"""
db/models/plan.py

Compensation plan definitions and plan assignments.

``variants`` stores the plan-authoring payload verbatim::

    {"variants": [{"variantId": "...", "variantName": "...", "components": [...]}]}

``input_bindings`` carries the metric derivation rules under
``metric_derivations``. Both are validated at calculation time by
``compensation.plan.load_plan``.
"""

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class PlanStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class Plan(Base, TimestampMixin):
    __tablename__ = "plans"

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
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PlanStatus.ACTIVE,
    )
    variants: Mapped[Any] = mapped_column(
        JSONType,
        nullable=False,
        comment="Plan variants with their typed components",
    )
    input_bindings: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Metric derivation rules and other input wiring",
    )

    __table_args__ = (
        Index("ix_plans_tenant_id", "tenant_id"),
        Index("ix_plans_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Plan id={self.id} name={self.name!r} status={self.status!r}>"


class PlanAssignment(Base, TimestampMixin):
    __tablename__ = "plan_assignments"

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
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
    )
    individual_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("individuals.id", ondelete="CASCADE"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("plan_id", "individual_id", name="uq_plan_assignments_plan_individual"),
        Index("ix_plan_assignments_tenant_plan", "tenant_id", "plan_id"),
    )
