"""
compensation/base.py

Abstract base class for component evaluators.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

# Outcome codes recorded on every evaluation.
OUTCOME_MATCHED = "matched"
OUTCOME_CLAMPED_LOW = "clamped_low"
OUTCOME_CLAMPED_HIGH = "clamped_high"
OUTCOME_NO_CONDITION_MET = "no_condition_met"
OUTCOME_METRIC_MISSING = "metric_missing"
OUTCOME_BELOW_THRESHOLD = "below_threshold"
OUTCOME_CAPPED = "capped"
OUTCOME_SKIPPED = "skipped"
OUTCOME_INVALID_CONFIG = "invalid_config"


@dataclass(frozen=True)
class ComponentEvaluation:
    """
    Payout contribution of one component for one individual.

    Attributes
    ----------
    payout:
        Unrounded Decimal contribution.
    outcome:
        One of the ``OUTCOME_*`` codes.
    metrics:
        Metric values the evaluator read, ``None`` for absent metrics.
    detail:
        Evaluator-specific lookup detail (band index, label, rate, ...).
    """

    component_id: str
    component_name: str
    component_type: str
    payout: Decimal
    outcome: str
    metrics: dict[str, Decimal | None] = field(default_factory=dict)
    detail: dict[str, Any] = field(default_factory=dict)


class BaseComponentEvaluator(ABC):
    """
    Contract for component evaluators.

    Subclasses receive a validated component model and the individual's
    resolved metrics and return a :class:`ComponentEvaluation`.

    No I/O, no logging and no side effects are permitted inside
    :meth:`evaluate`.
    """

    component_type: str = ""

    @abstractmethod
    def evaluate(self, component: Any, metrics: Mapping[str, Decimal]) -> ComponentEvaluation:
        """
        Compute the payout of *component* from *metrics*.

        Parameters
        ----------
        component:
            A component model whose ``component_type`` matches this evaluator.
        metrics:
            Present metric values keyed by name. Absent metrics are simply
            missing from the mapping.
        """
