"""
tests/test_calculator.py

Unit tests for the per-individual calculation.

Coverage
--------
- trace depth per density mode (full, light, silent)
- anomalous components forced back to full_trace
- rejected derivation rules pay nothing and flag the component
- excluded individuals still reported to density tracking
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from compensation.calculator import IndividualContext, evaluate_individual
from compensation.density import ExecutionMode, unresolved_variant_signature
from compensation.metrics import ANOMALY_MALFORMED_RULE, ANOMALY_NON_NUMERIC, FactRecord
from compensation.plan import load_plan
from compensation.variants import REASON_AMBIGUOUS, REASON_NO_MATCH
from tests.factories import single_variant_plan, tier_component, variant

PLAN_ID = "plan-1"
SIGNATURE = f"{PLAN_ID}:main:sales_tier:tier"


def _sales(sequence: int, amount, *, fact_type: str = "sales") -> FactRecord:
    return FactRecord(sequence=sequence, fact_type=fact_type, fields={"sales": amount}, individual_id="a")


def _evaluate(plan, rows, *, role: str | None = "Asesor", modes=None):
    return evaluate_individual(
        plan=plan,
        individual=IndividualContext(individual_id="a", role=role),
        own_rows=rows,
        org_unit_rows=[],
        density_modes=modes or {},
    )


@pytest.fixture()
def plan():
    return load_plan(PLAN_ID, single_variant_plan())


# ---------------------------------------------------------------------------
# Trace depth
# ---------------------------------------------------------------------------


class TestTraceModes:
    def test_unknown_signature_is_full_trace(self, plan) -> None:
        outcome = _evaluate(plan, [_sales(1, 300), _sales(2, 200)])
        (component,) = outcome.components
        assert component.signature == SIGNATURE
        assert component.trace_mode == ExecutionMode.FULL_TRACE
        rows = component.trace["metrics"]["sales"]["rows"]
        assert [r["sequence"] for r in rows] == [1, 2]

    def test_light_trace_keeps_values_but_drops_rows(self, plan) -> None:
        outcome = _evaluate(plan, [_sales(1, 300), _sales(2, 200)], modes={SIGNATURE: ExecutionMode.LIGHT_TRACE})
        (component,) = outcome.components
        assert component.trace_mode == ExecutionMode.LIGHT_TRACE
        assert component.trace["metrics"] == {"sales": "500"}
        assert "anomalies" not in component.trace
        assert component.trace["outcome"] == component.evaluation.outcome

    def test_silent_keeps_no_trace(self, plan) -> None:
        outcome = _evaluate(plan, [_sales(1, 1500)], modes={SIGNATURE: ExecutionMode.SILENT})
        (component,) = outcome.components
        assert component.trace_mode == ExecutionMode.SILENT
        assert component.trace is None
        assert outcome.total_payout == Decimal("100")
        assert outcome.observations[0].anomalies == 0

    @pytest.mark.parametrize("mode", [ExecutionMode.SILENT, ExecutionMode.LIGHT_TRACE])
    def test_anomaly_forces_full_trace(self, plan, mode) -> None:
        outcome = _evaluate(plan, [_sales(1, 300), _sales(2, "n/a")], modes={SIGNATURE: mode})
        (component,) = outcome.components
        assert component.trace_mode == ExecutionMode.FULL_TRACE
        assert [a["code"] for a in component.trace["anomalies"]] == [ANOMALY_NON_NUMERIC]
        assert component.trace["metrics"]["sales"]["value"] == "300"
        assert outcome.observations[0].anomalies == 1


# ---------------------------------------------------------------------------
# Rejected rules
# ---------------------------------------------------------------------------


class TestRejectedRule:
    def test_rejected_rule_pays_nothing_and_flags_component(self) -> None:
        plan = load_plan(
            PLAN_ID,
            single_variant_plan(),
            {"metric_derivations": [{"metric": "sales", "operation": "sum", "source_pattern": "sales"}]},
        )
        assert [i.code for i in plan.issues] == ["malformed_rule"]
        assert plan.rejected_metrics == frozenset({"sales"})

        outcome = _evaluate(plan, [_sales(1, 5000, fact_type="returns")], modes={SIGNATURE: ExecutionMode.SILENT})

        assert outcome.total_payout == Decimal("0")
        assert outcome.metrics["sales"].value is None
        (component,) = outcome.components
        assert [a.code for a in component.anomalies] == [ANOMALY_MALFORMED_RULE]
        assert component.trace_mode == ExecutionMode.FULL_TRACE
        assert outcome.observations[0].anomalies == 1


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


class TestExcludedIndividuals:
    def test_no_matching_variant_reports_plan_level_anomaly(self) -> None:
        plan = load_plan(
            PLAN_ID,
            {"variants": [variant("cert", "certificado"), variant("jr", "optometrista junior")]},
        )
        outcome = _evaluate(plan, [_sales(1, 1500)], role="Gerente")

        assert outcome.excluded_reason == REASON_NO_MATCH
        assert [(o.signature, o.executions, o.anomalies) for o in outcome.observations] == [
            (unresolved_variant_signature(PLAN_ID), 1, 1)
        ]

    def test_ambiguous_role_reports_each_candidate_component(self) -> None:
        plan = load_plan(
            PLAN_ID,
            {
                "variants": [
                    variant("x", "ventas", tier_component(), tier_component(component_id="bonus", name="Bonus")),
                    variant("y", "cajero"),
                ]
            },
        )
        outcome = _evaluate(plan, [], role="Cajero Ventas")

        assert outcome.excluded_reason == REASON_AMBIGUOUS
        assert sorted(o.signature for o in outcome.observations) == [
            f"{PLAN_ID}:x:bonus:tier",
            f"{PLAN_ID}:x:sales_tier:tier",
            f"{PLAN_ID}:y:sales_tier:tier",
        ]
        assert all(o.anomaly_rate == 1.0 for o in outcome.observations)
