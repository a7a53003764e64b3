"""
db/repositories/fact_repository.py

Read access to imported fact rows.

The repository never commits. ``add_rows`` exists for ingestion
collaborators and fixtures; the payout core itself only reads.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from compensation.metrics import FactRecord
from db.models.fact_row import FactRow

# Source systems put the store/branch reference in any of these fields.
_ORG_UNIT_FIELD_KEYS: tuple[str, ...] = (
    "storeId",
    "store_id",
    "num_tienda",
    "No_Tienda",
    "Tienda",
)


def org_unit_from_fields(fields: Mapping[str, Any]) -> str | None:
    """Return the first non-empty well-known org-unit field, as text."""

    for key in _ORG_UNIT_FIELD_KEYS:
        value = fields.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


class FactRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list_rows(self, *, tenant_id: uuid.UUID, period_id: uuid.UUID) -> list[FactRow]:
        """All rows for a tenant and period in commit order."""
        stmt = (
            select(FactRow)
            .where(FactRow.tenant_id == tenant_id, FactRow.period_id == period_id)
            .order_by(FactRow.id)
        )
        return list(self._session.scalars(stmt).all())

    def load_records(self, *, tenant_id: uuid.UUID, period_id: uuid.UUID) -> list[FactRecord]:
        """
        Rows for a tenant and period as immutable :class:`FactRecord` values.

        Org-unit rows without an explicit ``org_unit_ref`` fall back to the
        well-known store fields inside ``fields``.
        """
        records: list[FactRecord] = []
        for row in self.list_rows(tenant_id=tenant_id, period_id=period_id):
            fields = dict(row.fields or {})
            org_unit = row.org_unit_ref or org_unit_from_fields(fields)
            records.append(
                FactRecord(
                    sequence=row.id,
                    fact_type=row.fact_type,
                    fields=fields,
                    individual_id=None if row.individual_id is None else str(row.individual_id),
                    org_unit_ref=org_unit,
                )
            )
        return records

    def add_rows(
        self,
        *,
        tenant_id: uuid.UUID,
        period_id: uuid.UUID,
        rows: Iterable[Mapping[str, Any]],
    ) -> list[FactRow]:
        """
        Insert rows in iteration order and flush so ids reflect that order.

        Each mapping needs ``fact_type`` and ``fields``; ``individual_id`` and
        ``org_unit_ref`` are optional.
        """
        created: list[FactRow] = []
        for raw in rows:
            row = FactRow(
                tenant_id=tenant_id,
                period_id=period_id,
                individual_id=raw.get("individual_id"),
                org_unit_ref=raw.get("org_unit_ref"),
                fact_type=raw["fact_type"],
                fields=dict(raw.get("fields") or {}),
            )
            self._session.add(row)
            # Flush one at a time so the generated id follows input order.
            self._session.flush()
            created.append(row)
        return created
