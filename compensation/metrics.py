"""
compensation/metrics.py

Metric derivation resolver.

Turns the fact rows visible to one individual into named Decimal metrics by
applying the plan's derivation rules. A rule looks like::

    {
        "metric": "insurance_count",
        "operation": "count",
        "source_pattern": "insurance|referral",
        "filters": [{"field": "Estatus", "operator": "eq", "value": "vendido"}]
    }

Rules
-----
count  -> number of matching rows that survive every filter
sum    -> sum of ``source_field`` over the surviving rows
ratio  -> ``numerator / denominator * scale`` over already-derived metrics

Row selection
-------------
``source_pattern`` is a case-insensitive regular expression searched in the
normalised ``fact_type`` (lower case, whitespace and hyphens folded to
``_``), so a plain name behaves as a substring match.

When the individual has no rows of a matching fact type, the org-unit rows
(``individual_id`` is null, same org unit) of that fact type are used
instead. This is how store-level figures reach every member of the store.

Rows are always consumed in commit order (``sequence``) so Decimal sums are
reproducible.

Failure contract
----------------
- Rule matches no rows        -> metric absent, reason ``no_data`` (not an anomaly)
- Non-numeric / missing field -> contributes 0, anomaly recorded
- Malformed rule              -> :class:`MalformedRuleError`; :func:`parse_rules`
                                 rejects the rule and reports an issue. The
                                 rejected metric resolves absent with reason
                                 ``malformed_rule`` and an anomaly; it is never
                                 filled from row fields.
- No rule, no row carries the field
                              -> ``no_data``, unless rows of the metric's own
                                 fact type exist, then ``missing_metric`` plus
                                 an anomaly
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from compensation.errors import ConfigurationIssue, MalformedRuleError
from compensation.numeric import ZERO, to_decimal

_OPERATIONS = frozenset({"count", "sum", "ratio"})
_OPERATORS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "in", "contains"})
_OPERATOR_ALIASES: dict[str, str] = {
    "=": "eq",
    "==": "eq",
    "!=": "neq",
    "ne": "neq",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}
_FACT_TYPE_SEPARATORS = re.compile(r"[\s\-]+")

REASON_NO_DATA = "no_data"
REASON_MISSING_METRIC = "missing_metric"
REASON_MALFORMED_RULE = "malformed_rule"

ANOMALY_NON_NUMERIC = "non_numeric_field"
ANOMALY_MISSING_FIELD = "missing_field"
ANOMALY_MISSING_METRIC = "missing_metric"
ANOMALY_MALFORMED_RULE = "malformed_rule"


# ---------------------------------------------------------------------------
# Input types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FactRecord:
    """
    Read-only view of one imported fact row.

    ``sequence`` is the commit order and doubles as the summation order.
    """

    sequence: int
    fact_type: str
    fields: Mapping[str, Any]
    individual_id: str | None = None
    org_unit_ref: str | None = None

    @property
    def normalized_type(self) -> str:
        return normalize_fact_type(self.fact_type)


@dataclass(frozen=True)
class FilterPredicate:
    field: str
    operator: str
    value: Any

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return _apply_operator(self.operator, fields.get(self.field), self.value)


@dataclass(frozen=True)
class DerivationRule:
    metric: str
    operation: str
    source_pattern: str
    pattern: re.Pattern[str] = field(compare=False, repr=False)
    source_field: str | None = None
    filters: tuple[FilterPredicate, ...] = ()
    numerator: str | None = None
    denominator: str | None = None
    scale: Decimal = Decimal("1")


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricValue:
    """
    One resolved metric and how it was obtained.

    ``contributions`` holds ``(sequence, amount)`` pairs for the rows that fed
    the metric; it is only rendered in full traces.
    """

    name: str
    value: Decimal | None
    strategy: str
    scope: str
    row_count: int = 0
    reason: str | None = None
    contributions: tuple[tuple[int, str], ...] = ()

    @property
    def is_present(self) -> bool:
        return self.value is not None

    def summary(self) -> dict[str, Any]:
        return {
            "value": None if self.value is None else str(self.value),
            "strategy": self.strategy,
            "scope": self.scope,
            "row_count": self.row_count,
            "reason": self.reason,
        }

    def detail(self) -> dict[str, Any]:
        payload = self.summary()
        payload["rows"] = [{"sequence": seq, "amount": amount} for seq, amount in self.contributions]
        return payload


@dataclass(frozen=True)
class DerivationAnomaly:
    code: str
    metric: str
    message: str
    field: str | None = None
    sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "metric": self.metric,
            "message": self.message,
            "field": self.field,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class MetricResolution:
    metrics: dict[str, MetricValue]
    anomalies: tuple[DerivationAnomaly, ...] = ()

    def values(self) -> dict[str, Decimal]:
        """Present metrics only, keyed by name."""
        return {name: m.value for name, m in self.metrics.items() if m.value is not None}

    def anomalies_for(self, metric_names: Iterable[str]) -> list[DerivationAnomaly]:
        wanted = set(metric_names)
        return [a for a in self.anomalies if a.metric in wanted]


# ---------------------------------------------------------------------------
# Rule parsing
# ---------------------------------------------------------------------------


def normalize_fact_type(fact_type: str) -> str:
    return _FACT_TYPE_SEPARATORS.sub("_", (fact_type or "").strip().lower())


def parse_rule(raw: Mapping[str, Any], *, index: int | None = None) -> DerivationRule:
    """
    Validate one raw rule mapping.

    Both ``snake_case`` and ``camelCase`` keys are accepted.

    Raises
    ------
    MalformedRuleError
        When a field required by the rule's operation is missing or invalid.
    """

    if not isinstance(raw, Mapping):
        raise MalformedRuleError("rule must be an object", index=index)

    metric = _text(raw.get("metric"))
    if not metric:
        raise MalformedRuleError("rule has no target metric", index=index)

    operation = (_text(raw.get("operation")) or "").lower()
    if operation not in _OPERATIONS:
        raise MalformedRuleError(
            f"unknown operation {raw.get('operation')!r}; expected one of {sorted(_OPERATIONS)}",
            index=index,
            metric=metric,
        )

    if operation == "ratio":
        numerator = _text(raw.get("numerator"))
        denominator = _text(raw.get("denominator"))
        if not numerator or not denominator:
            raise MalformedRuleError("ratio rule needs numerator and denominator", index=index, metric=metric)
        scale = to_decimal(raw.get("scale", 1))
        if scale is None:
            raise MalformedRuleError(f"ratio scale {raw.get('scale')!r} is not numeric", index=index, metric=metric)
        return DerivationRule(
            metric=metric,
            operation=operation,
            source_pattern="",
            pattern=re.compile(""),
            numerator=numerator,
            denominator=denominator,
            scale=scale,
        )

    source_pattern = _text(raw.get("source_pattern", raw.get("sourcePattern")))
    if not source_pattern:
        raise MalformedRuleError("rule has no source_pattern", index=index, metric=metric)
    try:
        pattern = re.compile(source_pattern, re.IGNORECASE)
    except re.error as exc:
        raise MalformedRuleError(
            f"source_pattern {source_pattern!r} is not a valid expression: {exc}",
            index=index,
            metric=metric,
        ) from exc

    source_field = _text(raw.get("source_field", raw.get("sourceField")))
    if operation == "sum" and not source_field:
        raise MalformedRuleError("sum rule has no source_field", index=index, metric=metric)

    filters = tuple(_parse_filter(item, index=index, metric=metric) for item in raw.get("filters") or ())

    return DerivationRule(
        metric=metric,
        operation=operation,
        source_pattern=source_pattern,
        pattern=pattern,
        source_field=source_field,
        filters=filters,
    )


def parse_rules(raw_rules: Sequence[Any] | None) -> tuple[list[DerivationRule], list[ConfigurationIssue]]:
    """
    Parse every rule, rejecting malformed ones.

    Returns the valid rules in declaration order plus one issue per rejected
    rule. A second rule for an already-defined metric is rejected too.
    """

    rules: list[DerivationRule] = []
    issues: list[ConfigurationIssue] = []
    seen: set[str] = set()

    for index, raw in enumerate(raw_rules or ()):
        try:
            rule = parse_rule(raw, index=index)
        except MalformedRuleError as exc:
            issues.append(
                ConfigurationIssue(
                    code="malformed_rule",
                    message=str(exc),
                    scope="rule",
                    ref=exc.metric,
                    context={"index": index},
                )
            )
            continue
        if rule.metric in seen:
            issues.append(
                ConfigurationIssue(
                    code="duplicate_rule",
                    message=f"metric {rule.metric!r} is already derived by an earlier rule",
                    scope="rule",
                    ref=rule.metric,
                    context={"index": index},
                )
            )
            continue
        seen.add(rule.metric)
        rules.append(rule)

    return rules, issues


def _parse_filter(raw: Any, *, index: int | None, metric: str) -> FilterPredicate:
    if not isinstance(raw, Mapping):
        raise MalformedRuleError("filter must be an object", index=index, metric=metric)
    field_name = _text(raw.get("field"))
    if not field_name:
        raise MalformedRuleError("filter has no field", index=index, metric=metric)
    operator = (_text(raw.get("operator")) or "eq").lower()
    operator = _OPERATOR_ALIASES.get(operator, operator)
    if operator not in _OPERATORS:
        raise MalformedRuleError(f"unknown filter operator {raw.get('operator')!r}", index=index, metric=metric)
    value = raw.get("value")
    if operator == "in" and not isinstance(value, (list, tuple)):
        raise MalformedRuleError("'in' filter needs a list value", index=index, metric=metric)
    return FilterPredicate(field=field_name, operator=operator, value=value)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class MetricDerivationResolver:
    """
    Pure resolver from fact rows to metrics.

    Instances hold no per-call state and can be shared across worker threads.
    """

    def resolve(
        self,
        *,
        individual_rows: Sequence[FactRecord],
        org_unit_rows: Sequence[FactRecord],
        rules: Sequence[DerivationRule],
        required_metrics: Iterable[str] | None = None,
        rejected_metrics: Iterable[str] = (),
    ) -> MetricResolution:
        """
        Derive every rule's metric, then fill any remaining required metric
        from same-named row fields.

        Parameters
        ----------
        individual_rows:
            Rows whose ``individual_id`` is this individual.
        org_unit_rows:
            Rows with no individual for this individual's org unit.
        rules:
            Parsed derivation rules, count/sum first, ratio afterwards.
        required_metrics:
            Metric names the selected variant needs. Names without a rule
            are read from row fields.
        rejected_metrics:
            Metrics whose rule :func:`parse_rules` rejected. A required one
            resolves absent with an anomaly instead of a field aggregate.
        """
        own = sorted(individual_rows, key=lambda r: r.sequence)
        shared = sorted(org_unit_rows, key=lambda r: r.sequence)
        rejected = set(rejected_metrics)

        metrics: dict[str, MetricValue] = {}
        anomalies: list[DerivationAnomaly] = []

        for rule in rules:
            if rule.operation == "ratio":
                continue
            metrics[rule.metric] = self._derive(rule, own, shared, anomalies)

        for rule in rules:
            if rule.operation == "ratio":
                metrics[rule.metric] = _derive_ratio(rule, metrics)

        for name in required_metrics or ():
            if name in metrics:
                continue
            if name in rejected:
                metrics[name] = _rejected_metric(name, anomalies)
            else:
                metrics[name] = _aggregate_field(name, own, shared, anomalies)

        return MetricResolution(metrics=metrics, anomalies=tuple(anomalies))

    def _derive(
        self,
        rule: DerivationRule,
        own: Sequence[FactRecord],
        shared: Sequence[FactRecord],
        anomalies: list[DerivationAnomaly],
    ) -> MetricValue:
        candidates, scope = select_rows(rule.pattern, own, shared)
        if not candidates:
            return MetricValue(
                name=rule.metric,
                value=None,
                strategy=rule.operation,
                scope="none",
                reason=REASON_NO_DATA,
            )

        surviving = [row for row in candidates if all(p.matches(row.fields) for p in rule.filters)]

        if rule.operation == "count":
            return MetricValue(
                name=rule.metric,
                value=Decimal(len(surviving)),
                strategy="count",
                scope=scope,
                row_count=len(surviving),
                contributions=tuple((row.sequence, "1") for row in surviving),
            )

        total = ZERO
        contributions: list[tuple[int, str]] = []
        for row in surviving:
            amount = _numeric_field(row, rule.source_field or "", rule.metric, anomalies)
            total += amount
            contributions.append((row.sequence, str(amount)))
        return MetricValue(
            name=rule.metric,
            value=total,
            strategy="sum",
            scope=scope,
            row_count=len(surviving),
            contributions=tuple(contributions),
        )


def select_rows(
    pattern: re.Pattern[str],
    own: Sequence[FactRecord],
    shared: Sequence[FactRecord],
) -> tuple[list[FactRecord], str]:
    """
    Pick the rows a rule applies to, with per-fact-type org-unit fallback.

    Returns the rows in commit order and the scope they came from:
    ``individual``, ``org_unit``, ``mixed`` or ``none``.
    """

    own_matches = [row for row in own if pattern.search(row.normalized_type)]
    own_types = {row.normalized_type for row in own_matches}
    fallback = [
        row
        for row in shared
        if pattern.search(row.normalized_type) and row.normalized_type not in own_types
    ]

    if own_matches and fallback:
        scope = "mixed"
    elif own_matches:
        scope = "individual"
    elif fallback:
        scope = "org_unit"
    else:
        scope = "none"

    rows = sorted(own_matches + fallback, key=lambda r: r.sequence)
    return rows, scope


def _derive_ratio(rule: DerivationRule, metrics: Mapping[str, MetricValue]) -> MetricValue:
    numerator = metrics.get(rule.numerator or "")
    denominator = metrics.get(rule.denominator or "")
    if (
        numerator is None
        or denominator is None
        or numerator.value is None
        or denominator.value is None
        or denominator.value == ZERO
    ):
        return MetricValue(
            name=rule.metric,
            value=None,
            strategy="ratio",
            scope="derived",
            reason=REASON_NO_DATA,
        )
    return MetricValue(
        name=rule.metric,
        value=numerator.value / denominator.value * rule.scale,
        strategy="ratio",
        scope="derived",
    )


def _aggregate_field(
    name: str,
    own: Sequence[FactRecord],
    shared: Sequence[FactRecord],
    anomalies: list[DerivationAnomaly],
) -> MetricValue:
    """
    Sum a same-named field when no rule derives *name*.

    Rows of unrelated fact types say nothing about *name*; only rows whose
    fact type is the metric's own name are expected to carry it.
    """

    for scope, rows in (("individual", own), ("org_unit", shared)):
        carrying = [row for row in rows if name in row.fields]
        if not carrying:
            continue
        total = ZERO
        contributions: list[tuple[int, str]] = []
        for row in carrying:
            amount = _numeric_field(row, name, name, anomalies)
            total += amount
            contributions.append((row.sequence, str(amount)))
        return MetricValue(
            name=name,
            value=total,
            strategy="field_aggregate",
            scope=scope,
            row_count=len(carrying),
            contributions=tuple(contributions),
        )

    own_type = normalize_fact_type(name)
    expected = [row for row in (*own, *shared) if row.normalized_type == own_type]
    if not expected:
        return MetricValue(name=name, value=None, strategy="field_aggregate", scope="none", reason=REASON_NO_DATA)

    anomalies.append(
        DerivationAnomaly(
            code=ANOMALY_MISSING_METRIC,
            metric=name,
            sequence=expected[0].sequence,
            message=f"{len(expected)} {own_type!r} row(s) but none carries a field named {name!r}",
        )
    )
    return MetricValue(
        name=name,
        value=None,
        strategy="field_aggregate",
        scope="none",
        row_count=len(expected),
        reason=REASON_MISSING_METRIC,
    )


def _rejected_metric(name: str, anomalies: list[DerivationAnomaly]) -> MetricValue:
    anomalies.append(
        DerivationAnomaly(
            code=ANOMALY_MALFORMED_RULE,
            metric=name,
            message=f"derivation rule for {name!r} was rejected; metric left absent",
        )
    )
    return MetricValue(
        name=name,
        value=None,
        strategy="rejected_rule",
        scope="none",
        reason=REASON_MALFORMED_RULE,
    )


def _numeric_field(
    row: FactRecord,
    field_name: str,
    metric: str,
    anomalies: list[DerivationAnomaly],
) -> Decimal:
    if field_name not in row.fields:
        anomalies.append(
            DerivationAnomaly(
                code=ANOMALY_MISSING_FIELD,
                metric=metric,
                field=field_name,
                sequence=row.sequence,
                message=f"row {row.sequence} has no field {field_name!r}",
            )
        )
        return ZERO
    raw = row.fields[field_name]
    amount = to_decimal(raw)
    if amount is None:
        anomalies.append(
            DerivationAnomaly(
                code=ANOMALY_NON_NUMERIC,
                metric=metric,
                field=field_name,
                sequence=row.sequence,
                message=f"row {row.sequence} field {field_name!r} is not numeric: {raw!r}",
            )
        )
        return ZERO
    return amount


# ---------------------------------------------------------------------------
# Filter operators
# ---------------------------------------------------------------------------


def _apply_operator(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "in":
        return any(_equals(actual, item) for item in expected)
    if operator == "eq":
        return _equals(actual, expected)
    if operator == "neq":
        return not _equals(actual, expected)
    if operator == "contains":
        if actual is None or expected is None:
            return False
        return str(expected).strip().lower() in str(actual).strip().lower()

    left = to_decimal(actual)
    right = to_decimal(expected)
    if left is None or right is None:
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    left = to_decimal(actual)
    right = to_decimal(expected)
    if left is not None and right is not None:
        return left == right
    return str(actual).strip().lower() == str(expected).strip().lower()


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
