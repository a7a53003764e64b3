"""
tests/test_metrics.py

Unit tests for the metric derivation resolver.

Coverage
--------
- count and sum rules with filters and operator aliases
- org-unit fallback per fact type
- ratio rules over derived metrics
- field aggregation when no rule exists (no_data vs missing_metric)
- non-numeric and missing fields recorded as anomalies
- malformed and duplicate rule rejection
- determinism of Decimal summation
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from compensation.errors import MalformedRuleError
from compensation.metrics import (
    ANOMALY_MALFORMED_RULE,
    ANOMALY_MISSING_FIELD,
    ANOMALY_MISSING_METRIC,
    ANOMALY_NON_NUMERIC,
    REASON_MALFORMED_RULE,
    REASON_MISSING_METRIC,
    REASON_NO_DATA,
    FactRecord,
    MetricDerivationResolver,
    normalize_fact_type,
    parse_rule,
    parse_rules,
)


def _row(sequence: int, fact_type: str, *, individual: str | None = "ind-1", org_unit: str | None = "S01", **fields):
    return FactRecord(
        sequence=sequence,
        fact_type=fact_type,
        fields=fields,
        individual_id=individual,
        org_unit_ref=org_unit,
    )


def _store_row(sequence: int, fact_type: str, **fields):
    return _row(sequence, fact_type, individual=None, **fields)


@pytest.fixture()
def resolver() -> MetricDerivationResolver:
    return MetricDerivationResolver()


# ---------------------------------------------------------------------------
# Rule parsing
# ---------------------------------------------------------------------------


class TestParseRule:
    def test_camel_case_keys_accepted(self) -> None:
        rule = parse_rule(
            {"metric": "loans", "operation": "sum", "sourcePattern": "loan", "sourceField": "Monto"}
        )
        assert rule.source_field == "Monto"
        assert rule.source_pattern == "loan"

    def test_operator_alias_normalised(self) -> None:
        rule = parse_rule(
            {
                "metric": "big",
                "operation": "count",
                "source_pattern": "sale",
                "filters": [{"field": "amount", "operator": ">=", "value": 100}],
            }
        )
        assert rule.filters[0].operator == "gte"

    @pytest.mark.parametrize(
        "raw",
        [
            {"operation": "count", "source_pattern": "x"},
            {"metric": "m", "operation": "median", "source_pattern": "x"},
            {"metric": "m", "operation": "sum", "source_pattern": "x"},
            {"metric": "m", "operation": "count"},
            {"metric": "m", "operation": "count", "source_pattern": "("},
            {"metric": "m", "operation": "ratio", "numerator": "a"},
            {"metric": "m", "operation": "count", "source_pattern": "x", "filters": [{"field": "f", "operator": "like"}]},
            {"metric": "m", "operation": "count", "source_pattern": "x", "filters": [{"field": "f", "operator": "in", "value": "a"}]},
        ],
    )
    def test_malformed_rules_raise(self, raw) -> None:
        with pytest.raises(MalformedRuleError):
            parse_rule(raw)

    def test_parse_rules_collects_issues_and_keeps_valid_rules(self) -> None:
        rules, issues = parse_rules(
            [
                {"metric": "a", "operation": "count", "source_pattern": "x"},
                {"metric": "b", "operation": "sum", "source_pattern": "x"},
                {"metric": "a", "operation": "count", "source_pattern": "y"},
            ]
        )
        assert [r.metric for r in rules] == ["a"]
        assert [i.code for i in issues] == ["malformed_rule", "duplicate_rule"]
        assert issues[0].context == {"index": 1}

    def test_normalize_fact_type(self) -> None:
        assert normalize_fact_type("  Loan-Disbursements  ") == "loan_disbursements"
        assert normalize_fact_type("Deposit Balances") == "deposit_balances"


# ---------------------------------------------------------------------------
# count / sum
# ---------------------------------------------------------------------------


class TestCountAndSum:
    def test_count_with_filter(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {
                    "metric": "sold_policies",
                    "operation": "count",
                    "source_pattern": "insurance",
                    "filters": [{"field": "Estatus", "operator": "eq", "value": "VENDIDO"}],
                }
            ]
        )
        rows = [
            _row(1, "insurance", Estatus="vendido"),
            _row(2, "insurance", Estatus="cancelado"),
            _row(3, "insurance", Estatus="Vendido"),
            _row(4, "loans", Estatus="vendido"),
        ]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.values()["sold_policies"] == Decimal("2")
        assert result.metrics["sold_policies"].scope == "individual"

    def test_sum_in_commit_order(self, resolver) -> None:
        rules, _ = parse_rules(
            [{"metric": "disbursed", "operation": "sum", "source_pattern": "loan", "source_field": "amount"}]
        )
        rows = [
            _row(3, "loan_disbursements", amount="0.2"),
            _row(1, "loan_disbursements", amount="1,000.10"),
            _row(2, "loan_disbursements", amount=0.1),
        ]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        metric = result.metrics["disbursed"]
        assert metric.value == Decimal("1000.40")
        assert [seq for seq, _ in metric.contributions] == [1, 2, 3]

    def test_numeric_filter_comparison(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {
                    "metric": "large_sales",
                    "operation": "count",
                    "source_pattern": "sale",
                    "filters": [{"field": "amount", "operator": "gt", "value": "100"}],
                }
            ]
        )
        rows = [_row(1, "sales", amount=99), _row(2, "sales", amount="150"), _row(3, "sales", amount="n/a")]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.values()["large_sales"] == Decimal("1")

    def test_in_and_contains_filters(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {
                    "metric": "matched",
                    "operation": "count",
                    "source_pattern": "sale",
                    "filters": [
                        {"field": "channel", "operator": "in", "value": ["web", "store"]},
                        {"field": "product", "operator": "contains", "value": "lens"},
                    ],
                }
            ]
        )
        rows = [
            _row(1, "sales", channel="Store", product="Contact Lens Pack"),
            _row(2, "sales", channel="phone", product="lens"),
            _row(3, "sales", channel="web", product="frames"),
        ]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.values()["matched"] == Decimal("1")

    def test_rule_without_rows_is_no_data_not_anomaly(self, resolver) -> None:
        rules, _ = parse_rules([{"metric": "deposits", "operation": "count", "source_pattern": "deposit"}])
        result = resolver.resolve(individual_rows=[_row(1, "sales")], org_unit_rows=[], rules=rules)
        assert result.metrics["deposits"].value is None
        assert result.metrics["deposits"].reason == REASON_NO_DATA
        assert result.anomalies == ()


# ---------------------------------------------------------------------------
# Org-unit fallback
# ---------------------------------------------------------------------------


class TestOrgUnitFallback:
    def test_store_value_used_when_individual_has_no_rows_of_type(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {
                    "metric": "deposit_balance",
                    "operation": "sum",
                    "source_pattern": "deposit_balances",
                    "source_field": "balance",
                }
            ]
        )
        own = [_row(1, "loan_disbursements", amount=10)]
        store = [_store_row(2, "deposit_balances", balance="250000")]
        result = resolver.resolve(individual_rows=own, org_unit_rows=store, rules=rules)
        metric = result.metrics["deposit_balance"]
        assert metric.value == Decimal("250000")
        assert metric.scope == "org_unit"

    def test_own_rows_take_precedence_over_store_rows(self, resolver) -> None:
        rules, _ = parse_rules(
            [{"metric": "deposit_balance", "operation": "sum", "source_pattern": "deposit", "source_field": "balance"}]
        )
        own = [_row(1, "deposit_balances", balance=100)]
        store = [_store_row(2, "deposit_balances", balance=250000)]
        result = resolver.resolve(individual_rows=own, org_unit_rows=store, rules=rules)
        assert result.metrics["deposit_balance"].value == Decimal("100")
        assert result.metrics["deposit_balance"].scope == "individual"

    def test_fallback_is_per_fact_type(self, resolver) -> None:
        rules, _ = parse_rules(
            [{"metric": "volume", "operation": "sum", "source_pattern": "loan|deposit", "source_field": "amount"}]
        )
        own = [_row(1, "loan_disbursements", amount=5)]
        store = [_store_row(2, "deposit_balances", amount=7), _store_row(3, "loan_disbursements", amount=1000)]
        result = resolver.resolve(individual_rows=own, org_unit_rows=store, rules=rules)
        assert result.metrics["volume"].value == Decimal("12")
        assert result.metrics["volume"].scope == "mixed"


# ---------------------------------------------------------------------------
# Ratio
# ---------------------------------------------------------------------------


class TestRatio:
    def test_ratio_scaled_to_percent(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {"metric": "attainment", "operation": "ratio", "numerator": "sold", "denominator": "goal", "scale": 100},
                {"metric": "sold", "operation": "sum", "source_pattern": "sales", "source_field": "amount"},
                {"metric": "goal", "operation": "sum", "source_pattern": "goals", "source_field": "target"},
            ]
        )
        rows = [_row(1, "sales", amount=450), _row(2, "goals", target=600)]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.metrics["attainment"].value == Decimal("75")

    def test_zero_denominator_is_no_data(self, resolver) -> None:
        rules, _ = parse_rules(
            [
                {"metric": "sold", "operation": "sum", "source_pattern": "sales", "source_field": "amount"},
                {"metric": "goal", "operation": "sum", "source_pattern": "goals", "source_field": "target"},
                {"metric": "attainment", "operation": "ratio", "numerator": "sold", "denominator": "goal"},
            ]
        )
        rows = [_row(1, "sales", amount=450), _row(2, "goals", target=0)]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.metrics["attainment"].value is None
        assert result.metrics["attainment"].reason == REASON_NO_DATA


# ---------------------------------------------------------------------------
# Field aggregation and anomalies
# ---------------------------------------------------------------------------


class TestFieldAggregationAndAnomalies:
    def test_required_metric_without_rule_sums_field(self, resolver) -> None:
        rows = [_row(1, "sales", sales=300), _row(2, "sales", sales=200)]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=[], required_metrics=["sales"])
        assert result.metrics["sales"].value == Decimal("500")
        assert result.metrics["sales"].strategy == "field_aggregate"

    def test_no_rows_at_all_is_no_data(self, resolver) -> None:
        result = resolver.resolve(individual_rows=[], org_unit_rows=[], rules=[], required_metrics=["sales"])
        assert result.metrics["sales"].reason == REASON_NO_DATA
        assert result.anomalies == ()

    def test_unrelated_rows_are_no_data(self, resolver) -> None:
        own = [_row(1, "visits", count=3)]
        shared = [_store_row(2, "deposit_balances", balance=9)]
        result = resolver.resolve(individual_rows=own, org_unit_rows=shared, rules=[], required_metrics=["sales"])
        assert result.metrics["sales"].reason == REASON_NO_DATA
        assert result.anomalies == ()

    def test_own_type_rows_without_field_is_missing_metric_anomaly(self, resolver) -> None:
        rows = [_row(1, "Sales", amount=3)]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=[], required_metrics=["sales"])
        assert result.metrics["sales"].reason == REASON_MISSING_METRIC
        assert [(a.code, a.sequence) for a in result.anomalies] == [(ANOMALY_MISSING_METRIC, 1)]

    def test_rejected_rule_is_not_filled_from_fields(self, resolver) -> None:
        rules, issues = parse_rules([{"metric": "sales", "operation": "sum", "source_pattern": "sales"}])
        assert rules == []
        assert [i.ref for i in issues] == ["sales"]

        rows = [_row(1, "returns", sales=5000)]
        result = resolver.resolve(
            individual_rows=rows,
            org_unit_rows=[],
            rules=rules,
            required_metrics=["sales"],
            rejected_metrics=["sales"],
        )
        assert result.metrics["sales"].value is None
        assert result.metrics["sales"].reason == REASON_MALFORMED_RULE
        assert [a.code for a in result.anomalies_for(["sales"])] == [ANOMALY_MALFORMED_RULE]

    def test_non_numeric_value_contributes_zero_and_is_recorded(self, resolver) -> None:
        rules, _ = parse_rules(
            [{"metric": "disbursed", "operation": "sum", "source_pattern": "loan", "source_field": "amount"}]
        )
        rows = [_row(1, "loan", amount="100"), _row(2, "loan", amount="pending"), _row(3, "loan")]
        result = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        assert result.metrics["disbursed"].value == Decimal("100")
        codes = [(a.code, a.sequence) for a in result.anomalies]
        assert codes == [(ANOMALY_NON_NUMERIC, 2), (ANOMALY_MISSING_FIELD, 3)]
        assert result.anomalies_for(["disbursed"]) == list(result.anomalies)

    def test_resolution_is_deterministic(self, resolver) -> None:
        rules, _ = parse_rules(
            [{"metric": "total", "operation": "sum", "source_pattern": "sale", "source_field": "amount"}]
        )
        rows = [_row(i, "sales", amount=f"{i}.1") for i in range(1, 50)]
        first = resolver.resolve(individual_rows=rows, org_unit_rows=[], rules=rules)
        second = resolver.resolve(individual_rows=list(reversed(rows)), org_unit_rows=[], rules=rules)
        assert first.metrics["total"].value == second.metrics["total"].value
        assert str(first.metrics["total"].value) == str(second.metrics["total"].value)
