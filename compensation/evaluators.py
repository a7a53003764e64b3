"""
compensation/evaluators.py

Component evaluators.

Formulas
--------
Tier                    payout = value of the band containing metric
Matrix                  payout = values[row band][column band]
Percentage              payout = appliedTo * rate
Conditional percentage  payout = appliedTo * rate of the first matching condition

Band policy
-----------
Bands are half-open ``[min, max)``; the final band is ``[min, inf)``.
A value below the first band clamps to the first band. Matrix rows and
columns are located independently with the same policy.

Conditions are half-open as well and the first match wins, so with
``[0, 50) -> 0.00`` and ``[50, 100) -> 0.05`` a value of exactly 50 takes
the second rate.

All arithmetic is Decimal; nothing is rounded here.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Sequence

from compensation.base import (
    OUTCOME_BELOW_THRESHOLD,
    OUTCOME_CAPPED,
    OUTCOME_CLAMPED_HIGH,
    OUTCOME_CLAMPED_LOW,
    OUTCOME_MATCHED,
    OUTCOME_METRIC_MISSING,
    OUTCOME_NO_CONDITION_MET,
    OUTCOME_SKIPPED,
    BaseComponentEvaluator,
    ComponentEvaluation,
)
from compensation.components import (
    Band,
    ConditionalPercentageComponent,
    MatrixComponent,
    PercentageComponent,
    TierComponent,
)
from compensation.numeric import ZERO

POSITION_BELOW = "below"
POSITION_WITHIN = "within"
POSITION_ABOVE = "above"


def locate_band(bands: Sequence[Band], value: Decimal) -> tuple[int, str]:
    """
    Return ``(index, position)`` of the band that holds *value*.

    ``position`` is ``"below"`` when the value was clamped into the first
    band, ``"above"`` when it lies past the final band's nominal ``max`` and
    ``"within"`` otherwise.
    """

    if not bands:
        raise ValueError("cannot locate a value in an empty band list")

    first = bands[0]
    if first.min is not None and value < first.min:
        return 0, POSITION_BELOW

    last_index = len(bands) - 1
    last = bands[last_index]
    if last.min is None or value >= last.min:
        if last.max is not None and value >= last.max:
            return last_index, POSITION_ABOVE
        return last_index, POSITION_WITHIN

    chosen = 0
    for index, band in enumerate(bands[:last_index]):
        lower_ok = band.min is None or value >= band.min
        if not lower_ok:
            break
        chosen = index
        if band.max is None or value < band.max:
            return index, POSITION_WITHIN
    # Only reachable on gapped bands: fall back to the nearest band below.
    return chosen, POSITION_WITHIN


def _band_outcome(position: str) -> str:
    if position == POSITION_BELOW:
        return OUTCOME_CLAMPED_LOW
    if position == POSITION_ABOVE:
        return OUTCOME_CLAMPED_HIGH
    return OUTCOME_MATCHED


def _band_trace(band: Band, index: int) -> dict[str, Any]:
    return {
        "index": index,
        "label": band.label,
        "min": None if band.min is None else str(band.min),
        "max": None if band.max is None else str(band.max),
    }


def _in_range(value: Decimal, lower: Decimal | None, upper: Decimal | None) -> bool:
    if lower is not None and value < lower:
        return False
    if upper is not None and value >= upper:
        return False
    return True


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


class TierEvaluator(BaseComponentEvaluator):
    component_type = "tier"

    def evaluate(self, component: TierComponent, metrics: Mapping[str, Decimal]) -> ComponentEvaluation:
        metric_name = component.config.metric
        value = metrics.get(metric_name)
        if value is None:
            return _missing(component, {metric_name: None}, metric_name)

        index, position = locate_band(component.config.tiers, value)
        band = component.config.tiers[index]
        return ComponentEvaluation(
            component_id=component.id,
            component_name=component.name,
            component_type=self.component_type,
            payout=band.value,
            outcome=_band_outcome(position),
            metrics={metric_name: value},
            detail={"band": _band_trace(band, index), "value": str(band.value)},
        )


class MatrixEvaluator(BaseComponentEvaluator):
    component_type = "matrix"

    def evaluate(self, component: MatrixComponent, metrics: Mapping[str, Decimal]) -> ComponentEvaluation:
        config = component.config
        row_value = metrics.get(config.row_metric)
        column_value = metrics.get(config.column_metric)
        used = {config.row_metric: row_value, config.column_metric: column_value}

        missing = [name for name, value in ((config.row_metric, row_value), (config.column_metric, column_value)) if value is None]
        if missing:
            return _missing(component, used, ", ".join(missing))

        row_index, row_position = locate_band(config.row_bands, row_value)
        column_index, column_position = locate_band(config.column_bands, column_value)
        payout = config.values[row_index][column_index]

        if POSITION_BELOW in (row_position, column_position):
            outcome = OUTCOME_CLAMPED_LOW
        elif POSITION_ABOVE in (row_position, column_position):
            outcome = OUTCOME_CLAMPED_HIGH
        else:
            outcome = OUTCOME_MATCHED

        return ComponentEvaluation(
            component_id=component.id,
            component_name=component.name,
            component_type=self.component_type,
            payout=payout,
            outcome=outcome,
            metrics=used,
            detail={
                "row": _band_trace(config.row_bands[row_index], row_index),
                "column": _band_trace(config.column_bands[column_index], column_index),
                "value": str(payout),
            },
        )


class PercentageEvaluator(BaseComponentEvaluator):
    component_type = "percentage"

    def evaluate(self, component: PercentageComponent, metrics: Mapping[str, Decimal]) -> ComponentEvaluation:
        config = component.config
        base = metrics.get(config.applied_to)
        if base is None:
            return _missing(component, {config.applied_to: None}, config.applied_to)

        detail: dict[str, Any] = {"base": str(base), "rate": str(config.rate)}
        if config.min_threshold is not None and base < config.min_threshold:
            detail["min_threshold"] = str(config.min_threshold)
            return ComponentEvaluation(
                component_id=component.id,
                component_name=component.name,
                component_type=self.component_type,
                payout=ZERO,
                outcome=OUTCOME_BELOW_THRESHOLD,
                metrics={config.applied_to: base},
                detail=detail,
            )

        payout = base * config.rate
        outcome = OUTCOME_MATCHED
        if config.max_payout is not None and payout > config.max_payout:
            detail["uncapped"] = str(payout)
            detail["max_payout"] = str(config.max_payout)
            payout = config.max_payout
            outcome = OUTCOME_CAPPED

        return ComponentEvaluation(
            component_id=component.id,
            component_name=component.name,
            component_type=self.component_type,
            payout=payout,
            outcome=outcome,
            metrics={config.applied_to: base},
            detail=detail,
        )


class ConditionalPercentageEvaluator(BaseComponentEvaluator):
    component_type = "conditional_percentage"

    def evaluate(
        self,
        component: ConditionalPercentageComponent,
        metrics: Mapping[str, Decimal],
    ) -> ComponentEvaluation:
        config = component.config
        used: dict[str, Decimal | None] = {config.applied_to: metrics.get(config.applied_to)}

        for index, condition in enumerate(config.conditions):
            metric_name = config.metric_for(condition)
            value = metrics.get(metric_name)
            used[metric_name] = value
            if value is None or not _in_range(value, condition.min, condition.max):
                continue

            detail = {
                "condition": {
                    "index": index,
                    "metric": metric_name,
                    "label": condition.metric_label,
                    "min": None if condition.min is None else str(condition.min),
                    "max": None if condition.max is None else str(condition.max),
                },
                "rate": str(condition.rate),
            }
            base = metrics.get(config.applied_to)
            if base is None:
                return ComponentEvaluation(
                    component_id=component.id,
                    component_name=component.name,
                    component_type=self.component_type,
                    payout=ZERO,
                    outcome=OUTCOME_METRIC_MISSING,
                    metrics=used,
                    detail={**detail, "missing": config.applied_to},
                )
            detail["base"] = str(base)
            return ComponentEvaluation(
                component_id=component.id,
                component_name=component.name,
                component_type=self.component_type,
                payout=base * condition.rate,
                outcome=OUTCOME_MATCHED,
                metrics=used,
                detail=detail,
            )

        return ComponentEvaluation(
            component_id=component.id,
            component_name=component.name,
            component_type=self.component_type,
            payout=ZERO,
            outcome=OUTCOME_NO_CONDITION_MET,
            metrics=used,
            detail={"conditions_checked": len(config.conditions)},
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_EVALUATOR_REGISTRY: dict[str, BaseComponentEvaluator] = {
    "tier": TierEvaluator(),
    "matrix": MatrixEvaluator(),
    "percentage": PercentageEvaluator(),
    "conditional_percentage": ConditionalPercentageEvaluator(),
}


def evaluate_component(component: Any, metrics: Mapping[str, Decimal]) -> ComponentEvaluation:
    """
    Dispatch *component* to its evaluator.

    Disabled components return a zero ``skipped`` evaluation without
    touching the metrics.
    """

    if not component.enabled:
        return ComponentEvaluation(
            component_id=component.id,
            component_name=component.name,
            component_type=component.component_type,
            payout=ZERO,
            outcome=OUTCOME_SKIPPED,
        )
    evaluator = _EVALUATOR_REGISTRY[component.component_type]
    return evaluator.evaluate(component, metrics)


def _missing(component: Any, used: dict[str, Decimal | None], missing: str) -> ComponentEvaluation:
    return ComponentEvaluation(
        component_id=component.id,
        component_name=component.name,
        component_type=component.component_type,
        payout=ZERO,
        outcome=OUTCOME_METRIC_MISSING,
        metrics=used,
        detail={"missing": missing},
    )
