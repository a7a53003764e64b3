"""
tests/test_calculation_orchestrator.py

End-to-end batch runs against in-memory SQLite.

Coverage
--------
- totals, per-individual results and manifest for a small population
- determinism and re-run supersession
- OFFICIAL predecessor moved to SUPERSEDED; locked predecessor refused
- not-found, empty-population, already-running and cancellation paths
- density rows written per signature
- ambiguous and unmatched roles excluded, reported and folded into density
- unrelated store rows do not turn a missing metric into an anomaly
"""

from __future__ import annotations

import threading
import uuid
from decimal import Decimal

import pytest

from app.config import CalculationSettings, PersistenceSettings
from app.services.calculation_orchestrator import (
    CalculationCancelledError,
    CalculationOrchestrator,
    NoEligibleIndividualsError,
    PeriodNotFoundError,
    PlanNotFoundError,
    TenantNotFoundError,
)
from app.services.lifecycle_service import BatchLockedError
from app.services.run_registry import CalculationAlreadyRunningError, RunKey, RunRegistry
from compensation.density import PatternDensityTracker, unresolved_variant_signature
from compensation.errors import PlanConfigurationError
from compensation.variants import REASON_AMBIGUOUS, REASON_NO_MATCH
from db.models.calculation_batch import CalculationBatch
from db.repositories.calculation_repository import CalculationRepository
from db.repositories.density_repository import DensityRepository
from tests.factories import tier_component, variant


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def registry() -> RunRegistry:
    return RunRegistry()


@pytest.fixture()
def orchestrator(registry) -> CalculationOrchestrator:
    return CalculationOrchestrator(
        settings=CalculationSettings(max_workers=2),
        persistence_settings=PersistenceSettings(max_retries=1, backoff_initial_seconds=0.0),
        tracker=PatternDensityTracker(),
        registry=registry,
        sleep=lambda seconds: None,
    )


@pytest.fixture()
def population(seeder):
    """
    Four assigned individuals: A sells 500 (base band), B sells 1500 (bonus
    band), C and D have no rows at all.
    """
    plan = seeder.plan()
    people = {name: seeder.individual(name, role="Asesor", org_unit_ref="S01", plan=plan) for name in "abcd"}
    seeder.facts(
        [
            {"fact_type": "sales", "individual_id": people["a"].id, "fields": {"sales": 300}},
            {"fact_type": "sales", "individual_id": people["a"].id, "fields": {"sales": 200}},
            {"fact_type": "sales", "individual_id": people["b"].id, "fields": {"sales": "1500"}},
        ]
    )
    return plan, people


def _run(orchestrator, seeder, plan, db, **kwargs):
    return orchestrator.run(
        tenant_id=seeder.tenant.id,
        period_id=seeder.period.id,
        plan_id=plan.id,
        db=db,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestRun:
    def test_end_to_end_totals(self, orchestrator, seeder, population, db) -> None:
        plan, people = population
        result = _run(orchestrator, seeder, plan, db)

        assert result.individual_count == 4
        assert result.total_payout == Decimal("100")
        assert result.lifecycle_state == "PREVIEW"
        assert result.anomalies == []
        assert result.exclusions == []
        assert result.superseded_batch_id is None

        by_external = {r.external_id: r for r in result.results}
        assert by_external["a"].total_payout == Decimal("0")
        assert by_external["b"].total_payout == Decimal("100")
        assert by_external["c"].components[0].outcome == "metric_missing"
        assert result.aggregates["nonzero_payout_count"] == 1
        assert result.aggregates["component_totals"] == {"Sales Tier": "100"}

    def test_batch_and_results_are_persisted(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        result = _run(orchestrator, seeder, plan, db)

        repo = CalculationRepository(db)
        batch = repo.get_batch(result.batch_id)
        assert batch.lifecycle_state == "PREVIEW"
        assert batch.individual_count == 4
        assert Decimal(batch.total_payout) == Decimal("100")
        assert len(repo.list_results(batch.id)) == 4

        transitions = [(t.from_state, t.to_state, t.actor_id) for t in repo.list_transitions(batch.id)]
        assert transitions == [(None, "DRAFT", "system"), ("DRAFT", "PREVIEW", "system")]

    def test_runs_are_deterministic(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        first = _run(orchestrator, seeder, plan, db)
        second = _run(orchestrator, seeder, plan, db)
        assert first.total_payout == second.total_payout
        assert [(r.external_id, r.total_payout) for r in first.results] == [
            (r.external_id, r.total_payout) for r in second.results
        ]

    def test_rerun_supersedes_previous_batch(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        first = _run(orchestrator, seeder, plan, db)
        second = _run(orchestrator, seeder, plan, db)

        assert second.superseded_batch_id == first.batch_id
        old = db.get(CalculationBatch, first.batch_id)
        new = db.get(CalculationBatch, second.batch_id)
        assert old.superseded_by == second.batch_id
        assert new.supersedes == first.batch_id
        # A PREVIEW predecessor keeps its state; only the pointer moves.
        assert old.lifecycle_state == "PREVIEW"

        current = CalculationRepository(db).get_current_batch(
            tenant_id=seeder.tenant.id, period_id=seeder.period.id, plan_id=plan.id
        )
        assert current.id == second.batch_id

    def test_official_predecessor_becomes_superseded(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        first = _run(orchestrator, seeder, plan, db)
        old = db.get(CalculationBatch, first.batch_id)
        old.lifecycle_state = "OFFICIAL"
        db.commit()

        _run(orchestrator, seeder, plan, db)

        assert old.lifecycle_state == "SUPERSEDED"
        last = CalculationRepository(db).list_transitions(old.id)[-1]
        assert (last.from_state, last.to_state, last.actor_id) == ("OFFICIAL", "SUPERSEDED", "system")
        assert "superseded_at" in old.summary["lifecycle"]

    def test_locked_predecessor_refuses_rerun(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        first = _run(orchestrator, seeder, plan, db)
        old = db.get(CalculationBatch, first.batch_id)
        old.lifecycle_state = "PENDING_APPROVAL"
        db.commit()

        with pytest.raises(BatchLockedError):
            _run(orchestrator, seeder, plan, db)

        batches = CalculationRepository(db).list_batches(
            tenant_id=seeder.tenant.id, include_superseded=True
        )
        assert [b.id for b in batches] == [first.batch_id]
        assert old.superseded_by is None

    def test_density_rows_written(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        result = _run(orchestrator, seeder, plan, db)

        signature = f"{plan.id}:main:sales_tier:tier"
        states = DensityRepository(db).get_states(seeder.tenant.id, [signature])
        assert states[signature].total_executions == 4
        assert [s.signature for s in result.density_updates] == [signature]
        assert result.results[0].components[0].trace_mode == "full_trace"

    def test_unrelated_store_rows_leave_missing_sales_anomaly_free(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        seeder.facts([{"fact_type": "deposit_balances", "org_unit_ref": "S01", "fields": {"balance": 9}}])

        result = _run(orchestrator, seeder, plan, db)

        assert result.anomalies == []
        assert result.total_payout == Decimal("100")
        (state,) = result.density_updates
        assert state.last_anomaly_rate == 0.0
        assert state.confidence > 0.0


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


class TestExclusions:
    def test_ambiguous_role_is_excluded_and_reported(self, orchestrator, seeder, db) -> None:
        plan = seeder.plan(
            [
                variant("x", "ventas", tier_component()),
                variant("y", "cajero", tier_component()),
            ]
        )
        excluded = seeder.individual("e1", role="Cajero Ventas", plan=plan)
        seeder.individual("e2", role="Cajero", plan=plan)

        result = _run(orchestrator, seeder, plan, db)

        assert result.individual_count == 2
        assert [e["individual_id"] for e in result.exclusions] == [str(excluded.id)]
        assert result.exclusions[0]["reason"] == REASON_AMBIGUOUS
        assert any(issue["code"] == REASON_AMBIGUOUS for issue in result.issues)
        row = next(r for r in result.results if r.external_id == "e1")
        assert row.total_payout == Decimal("0")
        assert row.components == []

        states = {s.signature: s for s in result.density_updates}
        assert states[f"{plan.id}:x:sales_tier:tier"].last_anomaly_rate == 1.0
        assert states[f"{plan.id}:y:sales_tier:tier"].last_anomaly_rate == pytest.approx(0.5)

    def test_unmatched_role_is_folded_into_density(self, orchestrator, seeder, db) -> None:
        plan = seeder.plan([variant("cert", "certificado"), variant("jr", "optometrista junior")])
        seeder.individual("a", role="Certificado", plan=plan)
        seeder.individual("b", role="Gerente", plan=plan)

        result = _run(orchestrator, seeder, plan, db)

        assert [e["reason"] for e in result.exclusions] == [REASON_NO_MATCH]
        signature = unresolved_variant_signature(plan.id)
        states = DensityRepository(db).get_states(seeder.tenant.id, [signature])
        assert states[signature].last_anomaly_rate == 1.0
        assert states[signature].execution_mode == "full_trace"


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailures:
    def test_unknown_tenant(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        with pytest.raises(TenantNotFoundError):
            orchestrator.run(tenant_id=uuid.uuid4(), period_id=seeder.period.id, plan_id=plan.id, db=db)

    def test_unknown_period(self, orchestrator, seeder, population, db) -> None:
        plan, _ = population
        with pytest.raises(PeriodNotFoundError):
            orchestrator.run(tenant_id=seeder.tenant.id, period_id=uuid.uuid4(), plan_id=plan.id, db=db)

    def test_unknown_plan(self, orchestrator, seeder, db) -> None:
        with pytest.raises(PlanNotFoundError):
            orchestrator.run(tenant_id=seeder.tenant.id, period_id=seeder.period.id, plan_id=uuid.uuid4(), db=db)

    def test_broken_plan_fails_fast(self, orchestrator, seeder, db) -> None:
        plan = seeder.plan({"variants": []})
        seeder.individual("a", plan=plan)
        with pytest.raises(PlanConfigurationError):
            _run(orchestrator, seeder, plan, db)

    def test_no_assigned_individuals(self, orchestrator, seeder, db) -> None:
        plan = seeder.plan()
        seeder.individual("inactive", plan=plan, is_active=False)
        with pytest.raises(NoEligibleIndividualsError):
            _run(orchestrator, seeder, plan, db)

    def test_second_run_for_busy_key_is_rejected(self, orchestrator, registry, seeder, population, db) -> None:
        plan, _ = population
        key = RunKey(tenant_id=seeder.tenant.id, period_id=seeder.period.id, plan_id=plan.id)
        with registry.claim(key):
            with pytest.raises(CalculationAlreadyRunningError):
                _run(orchestrator, seeder, plan, db)
        assert not registry.is_running(key)

    def test_cancelled_run_writes_nothing(self, orchestrator, registry, seeder, population, db) -> None:
        plan, _ = population
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CalculationCancelledError):
            _run(orchestrator, seeder, plan, db, cancel_event=cancel)

        assert CalculationRepository(db).list_batches(tenant_id=seeder.tenant.id, include_superseded=True) == []
        assert DensityRepository(db).list_states(seeder.tenant.id) == []
        key = RunKey(tenant_id=seeder.tenant.id, period_id=seeder.period.id, plan_id=plan.id)
        assert not registry.is_running(key)
