"""
db/repositories/plan_repository.py

Lookups for the reference data a calculation needs: tenants, periods,
plans and the individuals assigned to a plan.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.individual import Individual
from db.models.period import Period
from db.models.plan import Plan, PlanAssignment
from db.models.tenant import Tenant


class PlanRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_tenant(self, tenant_id: uuid.UUID) -> Tenant | None:
        return self._session.get(Tenant, tenant_id)

    def get_period(self, *, tenant_id: uuid.UUID, period_id: uuid.UUID) -> Period | None:
        period = self._session.get(Period, period_id)
        if period is None or period.tenant_id != tenant_id:
            return None
        return period

    def get_plan(self, *, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> Plan | None:
        plan = self._session.get(Plan, plan_id)
        if plan is None or plan.tenant_id != tenant_id:
            return None
        return plan

    def list_assigned_individuals(self, *, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> list[Individual]:
        """
        Active individuals assigned to *plan_id*.

        Ordered by external id then id so batch results have a stable order.
        """
        stmt = (
            select(Individual)
            .join(PlanAssignment, PlanAssignment.individual_id == Individual.id)
            .where(
                PlanAssignment.tenant_id == tenant_id,
                PlanAssignment.plan_id == plan_id,
                Individual.is_active.is_(True),
            )
            .order_by(Individual.external_id, Individual.id)
        )
        return list(self._session.scalars(stmt).all())

    def assign(
        self,
        *,
        tenant_id: uuid.UUID,
        plan_id: uuid.UUID,
        individual_ids: Iterable[uuid.UUID],
    ) -> list[PlanAssignment]:
        assignments = [
            PlanAssignment(tenant_id=tenant_id, plan_id=plan_id, individual_id=individual_id)
            for individual_id in individual_ids
        ]
        self._session.add_all(assignments)
        self._session.flush()
        return assignments
