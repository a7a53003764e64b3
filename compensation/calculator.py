"""
compensation/calculator.py

Per-individual payout calculation.

Composes the variant resolver, the metric derivation resolver and the
component evaluators for one individual. The function is pure and touches
only its arguments, so the orchestrator can fan individuals out across a
worker pool.

Trace depth per component follows the density mode resolved before the
batch started. A component that hits an anomaly is always traced in full.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Sequence

from compensation.base import OUTCOME_INVALID_CONFIG, ComponentEvaluation
from compensation.density import (
    DensityObservation,
    ExecutionMode,
    pattern_signature,
    unresolved_variant_signature,
)
from compensation.errors import ConfigurationIssue
from compensation.evaluators import evaluate_component
from compensation.metrics import (
    DerivationAnomaly,
    FactRecord,
    MetricDerivationResolver,
    MetricResolution,
    MetricValue,
)
from compensation.numeric import ZERO
from compensation.plan import PlanDefinition
from compensation.variants import REASON_AMBIGUOUS, VariantResolver


@dataclass(frozen=True)
class IndividualContext:
    individual_id: str
    role: str | None = None
    org_unit_ref: str | None = None
    external_id: str | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class ComponentOutcome:
    evaluation: ComponentEvaluation
    signature: str
    trace_mode: str
    trace: dict[str, Any] | None
    anomalies: tuple[DerivationAnomaly, ...] = ()

    @property
    def payout(self) -> Decimal:
        return self.evaluation.payout


@dataclass(frozen=True)
class IndividualOutcome:
    individual: IndividualContext
    total_payout: Decimal
    variant_id: str | None = None
    variant_name: str | None = None
    variant_strategy: str | None = None
    components: tuple[ComponentOutcome, ...] = ()
    metrics: Mapping[str, MetricValue] = field(default_factory=dict)
    anomalies: tuple[DerivationAnomaly, ...] = ()
    issues: tuple[ConfigurationIssue, ...] = ()
    excluded_reason: str | None = None
    log: tuple[str, ...] = ()
    observations: tuple[DensityObservation, ...] = ()

    @property
    def excluded(self) -> bool:
        return self.excluded_reason is not None


def evaluate_individual(
    *,
    plan: PlanDefinition,
    individual: IndividualContext,
    own_rows: Sequence[FactRecord],
    org_unit_rows: Sequence[FactRecord],
    density_modes: Mapping[str, str],
    metric_resolver: MetricDerivationResolver | None = None,
    variant_resolver: VariantResolver | None = None,
) -> IndividualOutcome:
    """
    Run variant -> metrics -> components for one individual.

    Parameters
    ----------
    density_modes:
        Execution mode per pattern signature, read before the batch. A
        signature missing from the mapping is treated as ``full_trace``.
    """
    metric_resolver = metric_resolver or MetricDerivationResolver()
    variant_resolver = variant_resolver or VariantResolver()
    log: list[str] = []

    resolution = variant_resolver.resolve(individual.role, plan.variants)
    if resolution.variant is None:
        issues: tuple[ConfigurationIssue, ...] = ()
        if resolution.reason == REASON_AMBIGUOUS:
            issues = (
                ConfigurationIssue(
                    code=REASON_AMBIGUOUS,
                    message=f"role {individual.role!r} matches variants {', '.join(resolution.candidates)} equally",
                    scope="individual",
                    ref=individual.individual_id,
                    context={"candidates": list(resolution.candidates)},
                ),
            )
        log.append(f"excluded: {resolution.reason} (role={individual.role!r})")
        return IndividualOutcome(
            individual=individual,
            total_payout=ZERO,
            variant_strategy=resolution.strategy,
            issues=issues,
            excluded_reason=resolution.reason,
            log=tuple(log),
            observations=exclusion_observations(plan, resolution.candidates),
        )

    variant = resolution.variant
    log.append(f"variant {variant.variant_name!r} via {resolution.strategy}")
    components = variant.enabled_components()

    required: dict[str, None] = {}
    for component in components:
        for name in component.required_metrics():
            required.setdefault(name, None)

    metrics = metric_resolver.resolve(
        individual_rows=own_rows,
        org_unit_rows=org_unit_rows,
        rules=plan.rules,
        required_metrics=list(required),
        rejected_metrics=plan.rejected_metrics,
    )
    for name in required:
        value = metrics.metrics.get(name)
        if value is not None and value.value is None:
            log.append(f"metric {name!r} absent ({value.reason})")
    for anomaly in metrics.anomalies:
        log.append(f"anomaly {anomaly.code}: {anomaly.message}")

    values = metrics.values()
    outcomes: list[ComponentOutcome] = []
    observations: list[DensityObservation] = []
    total = ZERO

    for component in components:
        signature = pattern_signature(plan.plan_id, variant.variant_id, component)
        related = tuple(metrics.anomalies_for(component.required_metrics()))

        if (variant.variant_id, component.id) in plan.invalid_components:
            evaluation = ComponentEvaluation(
                component_id=component.id,
                component_name=component.name,
                component_type=component.component_type,
                payout=ZERO,
                outcome=OUTCOME_INVALID_CONFIG,
            )
            flagged = True
        else:
            evaluation = evaluate_component(component, values)
            flagged = bool(related)

        mode = density_modes.get(signature, ExecutionMode.FULL_TRACE)
        if flagged:
            mode = ExecutionMode.FULL_TRACE

        outcomes.append(
            ComponentOutcome(
                evaluation=evaluation,
                signature=signature,
                trace_mode=mode,
                trace=build_trace(mode, evaluation, metrics, related),
                anomalies=related,
            )
        )
        observations.append(DensityObservation(signature=signature, executions=1, anomalies=1 if flagged else 0))
        total += evaluation.payout
        log.append(f"component {component.name!r}: payout={evaluation.payout} outcome={evaluation.outcome}")

    log.append(f"total={total}")
    return IndividualOutcome(
        individual=individual,
        total_payout=total,
        variant_id=variant.variant_id,
        variant_name=variant.variant_name,
        variant_strategy=resolution.strategy,
        components=tuple(outcomes),
        metrics=dict(metrics.metrics),
        anomalies=metrics.anomalies,
        log=tuple(log),
        observations=tuple(observations),
    )


def exclusion_observations(plan: PlanDefinition, candidates: Sequence[str]) -> tuple[DensityObservation, ...]:
    """
    Anomaly observations for an individual no variant was resolved for.

    An ambiguous role counts against every enabled component of each tied
    variant. Without candidates the plan-level signature takes the hit.
    """

    signatures = [
        pattern_signature(plan.plan_id, variant.variant_id, component)
        for variant in plan.variants
        if variant.variant_id in candidates
        for component in variant.enabled_components()
    ]
    if not signatures:
        signatures = [unresolved_variant_signature(plan.plan_id)]
    return tuple(DensityObservation(signature=s, executions=1, anomalies=1) for s in signatures)


def build_trace(
    mode: str,
    evaluation: ComponentEvaluation,
    metrics: MetricResolution,
    anomalies: Sequence[DerivationAnomaly],
) -> dict[str, Any] | None:
    """
    Render the trace payload for *mode*.

    full_trace  -> outcome, lookup detail, per-row metric derivation
    light_trace -> outcome, lookup detail, metric values only
    silent      -> no trace
    """

    if mode == ExecutionMode.SILENT:
        return None

    used = [name for name in evaluation.metrics if name in metrics.metrics]
    if mode == ExecutionMode.LIGHT_TRACE:
        return {
            "mode": mode,
            "outcome": evaluation.outcome,
            "lookup": evaluation.detail,
            "metrics": {name: metrics.metrics[name].summary()["value"] for name in used},
        }
    return {
        "mode": ExecutionMode.FULL_TRACE,
        "outcome": evaluation.outcome,
        "lookup": evaluation.detail,
        "metrics": {name: metrics.metrics[name].detail() for name in used},
        "anomalies": [a.to_dict() for a in anomalies],
    }
