"""
tests/test_api.py

HTTP surface: status mapping, capability checks and response shapes.

The lifespan hook (database ping) is not entered because the client is
used without a ``with`` block; ``get_db`` is overridden with the SQLite
session.
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from app.api.routers.calculation_router import get_calculation_orchestrator
from app.config import CalculationSettings, PersistenceSettings
from app.main import create_app
from app.services.calculation_orchestrator import CalculationOrchestrator
from app.services.run_registry import RunRegistry, get_run_registry
from compensation.density import PatternDensityTracker
from db.session import get_db

ADMIN = {"X-Actor-Id": "alice", "X-Capabilities": "manage_rule_sets"}
APPROVER = {"X-Actor-Id": "bob", "X-Capabilities": "approve_outcomes"}
VIEWER = {"X-Actor-Id": "vera", "X-Capabilities": "view_results"}
OWNER = {"X-Actor-Id": "olga", "X-Capabilities": "manage_tenants"}


@pytest.fixture()
def client(db) -> TestClient:
    registry = RunRegistry()
    orchestrator = CalculationOrchestrator(
        settings=CalculationSettings(max_workers=1),
        persistence_settings=PersistenceSettings(max_retries=0),
        tracker=PatternDensityTracker(),
        registry=registry,
        sleep=lambda seconds: None,
    )

    def _get_db():
        yield db

    application = create_app()
    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_calculation_orchestrator] = lambda: orchestrator
    application.dependency_overrides[get_run_registry] = lambda: registry
    return TestClient(application)


@pytest.fixture()
def run_body(seeder) -> dict[str, str]:
    plan = seeder.plan()
    person = seeder.individual("a", role="Asesor", plan=plan)
    seeder.facts([{"fact_type": "sales", "individual_id": person.id, "fields": {"sales": 1200}}])
    return {
        "tenantId": str(seeder.tenant.id),
        "periodId": str(seeder.period.id),
        "planId": str(plan.id),
    }


def _run(client, body) -> dict:
    response = client.post("/calculations/run", json=body, headers=ADMIN)
    assert response.status_code == 201, response.text
    return response.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "incentive-engine", "version": "1.0.0"}


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class TestRunEndpoint:
    def test_run_returns_preview_batch(self, client, run_body) -> None:
        payload = _run(client, run_body)
        assert payload["lifecycle_state"] == "PREVIEW"
        assert payload["individual_count"] == 1
        assert payload["total_payout"] == "100.00"
        component = payload["results"][0]["components"][0]
        assert component["payout"] == "100.00"
        assert component["trace"] is None

    def test_missing_actor_is_401(self, client, run_body) -> None:
        assert client.post("/calculations/run", json=run_body).status_code == 401

    def test_viewer_cannot_run(self, client, run_body) -> None:
        assert client.post("/calculations/run", json=run_body, headers=VIEWER).status_code == 403

    def test_unknown_plan_is_404(self, client, run_body) -> None:
        body = {**run_body, "planId": str(uuid.uuid4())}
        assert client.post("/calculations/run", json=body, headers=ADMIN).status_code == 404

    def test_broken_plan_is_422_with_errors(self, client, seeder) -> None:
        plan = seeder.plan({"variants": []})
        body = {"tenant_id": str(seeder.tenant.id), "period_id": str(seeder.period.id), "plan_id": str(plan.id)}
        response = client.post("/calculations/run", json=body, headers=ADMIN)
        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == ["plan has no variants"]

    def test_no_individuals_is_422(self, client, seeder) -> None:
        plan = seeder.plan()
        body = {"tenantId": str(seeder.tenant.id), "periodId": str(seeder.period.id), "planId": str(plan.id)}
        assert client.post("/calculations/run", json=body, headers=ADMIN).status_code == 422

    def test_cancel_without_active_run(self, client, run_body) -> None:
        response = client.post("/calculations/cancel", json=run_body, headers=ADMIN)
        assert response.status_code == 200
        assert response.json() == {"cancelled": False}


# ---------------------------------------------------------------------------
# Batches and lifecycle
# ---------------------------------------------------------------------------


class TestBatchEndpoints:
    def test_detail_visible_to_admin(self, client, run_body) -> None:
        batch_id = _run(client, run_body)["batch_id"]
        response = client.get(f"/calculations/batches/{batch_id}", headers=ADMIN)
        assert response.status_code == 200
        detail = response.json()
        assert detail["results_visible"] is True
        assert len(detail["results"]) == 1
        assert detail["summary"]["aggregates"]["nonzero_payout_count"] == 1

    def test_detail_withheld_from_viewer_before_publication(self, client, run_body) -> None:
        batch_id = _run(client, run_body)["batch_id"]
        detail = client.get(f"/calculations/batches/{batch_id}", headers=VIEWER).json()
        assert detail["results_visible"] is False
        assert detail["results"] == []
        assert detail["summary"] == {}

    def test_list_filters_by_visibility(self, client, run_body) -> None:
        _run(client, run_body)
        params = {"tenant_id": run_body["tenantId"]}
        assert len(client.get("/calculations/batches", params=params, headers=ADMIN).json()["batches"]) == 1
        assert client.get("/calculations/batches", params=params, headers=VIEWER).json()["batches"] == []

    def test_unknown_batch_is_404(self, client) -> None:
        assert client.get(f"/calculations/batches/{uuid.uuid4()}", headers=ADMIN).status_code == 404

    def test_transition_flow_and_history(self, client, run_body) -> None:
        batch_id = _run(client, run_body)["batch_id"]
        url = f"/calculations/batches/{batch_id}/transitions"

        response = client.post(url, json={"targetState": "OFFICIAL"}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["lifecycle_state"] == "OFFICIAL"

        client.post(url, json={"targetState": "PENDING_APPROVAL"}, headers=ADMIN)
        denied = client.post(url, json={"targetState": "APPROVED"}, headers=ADMIN)
        assert denied.status_code == 409
        assert isinstance(denied.json()["detail"], list)

        approved = client.post(url, json={"targetState": "APPROVED"}, headers=APPROVER)
        assert approved.status_code == 200

        history = client.get(url, headers=VIEWER).json()
        assert history["lifecycle_state"] == "APPROVED"
        assert history["valid_transitions"] == ["OFFICIAL", "POSTED"]
        assert [t["to_state"] for t in history["transitions"]] == [
            "DRAFT",
            "PREVIEW",
            "OFFICIAL",
            "PENDING_APPROVAL",
            "APPROVED",
        ]

    def test_invalid_transition_is_409(self, client, run_body) -> None:
        batch_id = _run(client, run_body)["batch_id"]
        response = client.post(
            f"/calculations/batches/{batch_id}/transitions",
            json={"targetState": "PAID"},
            headers=ADMIN,
        )
        assert response.status_code == 409

    def test_rerun_over_locked_batch_is_409(self, client, run_body) -> None:
        batch_id = _run(client, run_body)["batch_id"]
        url = f"/calculations/batches/{batch_id}/transitions"
        client.post(url, json={"targetState": "OFFICIAL"}, headers=ADMIN)
        client.post(url, json={"targetState": "PENDING_APPROVAL"}, headers=ADMIN)

        response = client.post("/calculations/run", json=run_body, headers=ADMIN)
        assert response.status_code == 409


# ---------------------------------------------------------------------------
# Density
# ---------------------------------------------------------------------------


class TestDensityEndpoints:
    def test_density_after_run(self, client, run_body) -> None:
        _run(client, run_body)
        response = client.get(f"/density/{run_body['tenantId']}")
        assert response.status_code == 200
        patterns = response.json()["patterns"]
        assert len(patterns) == 1
        assert patterns[0]["execution_mode"] == "full_trace"
        assert patterns[0]["total_executions"] == 1

    def test_unknown_tenant_is_404(self, client) -> None:
        assert client.get(f"/density/{uuid.uuid4()}").status_code == 404

    def test_corrections_force_full_trace(self, client, run_body) -> None:
        _run(client, run_body)
        signature = f"{run_body['planId']}:main:sales_tier:tier"
        response = client.post(
            f"/density/{run_body['tenantId']}/corrections",
            json={"corrections": {signature: 1}},
            headers=ADMIN,
        )
        assert response.status_code == 200
        pattern = response.json()["patterns"][0]
        assert pattern["last_correction_count"] == 1
        assert pattern["execution_mode"] == "full_trace"

    def test_clear_requires_manage_tenants(self, client, run_body) -> None:
        _run(client, run_body)
        url = f"/density/{run_body['tenantId']}"
        assert client.delete(url, headers=ADMIN).status_code == 403

        response = client.delete(url, headers=OWNER)
        assert response.status_code == 200
        assert response.json()["removed"] == 1
        assert client.get(url).json()["patterns"] == []
