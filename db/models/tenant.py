"""
db/models/tenant.py

Tenant model: the root entity. Every plan, period, individual and fact row is
scoped to one tenant.
"""

import uuid
from typing import Any

from sqlalchemy import Boolean, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    settings: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Per-tenant configuration overrides",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    __table_args__ = (Index("ix_tenants_is_active", "is_active"),)

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r}>"
