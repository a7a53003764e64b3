"""
compensation/density.py

Pattern density tracker.

Every recurring evaluation pattern (plan + variant + component) earns a
confidence score in [0, 1]. Confidence decides how much trace the engine
keeps for that pattern:

    confidence <  full_trace_max                          -> full_trace
    confidence >= silent_min and executions >= min sample -> silent
    otherwise                                             -> light_trace

A batch with no anomalies and no corrections moves confidence towards 1::

    confidence += (1 - confidence) * learning_rate

Any anomaly or correction multiplies confidence by ``anomaly_decay`` and
forces ``full_trace`` for the next run. A signature that has never been
seen is always ``full_trace``.

The tracker is pure: state comes in, new state goes out. Persistence and
per-signature serialisation live in the density repository/service.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any


class ExecutionMode:
    FULL_TRACE = "full_trace"
    LIGHT_TRACE = "light_trace"
    SILENT = "silent"


@dataclass(frozen=True)
class DensityPolicy:
    full_trace_max: float = 0.70
    silent_min: float = 0.95
    silent_min_executions: int = 10
    learning_rate: float = 0.2
    anomaly_decay: float = 0.5


@dataclass(frozen=True)
class DensityState:
    signature: str
    confidence: float = 0.0
    execution_mode: str = ExecutionMode.FULL_TRACE
    total_executions: int = 0
    last_anomaly_rate: float = 0.0
    last_correction_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "confidence": self.confidence,
            "execution_mode": self.execution_mode,
            "total_executions": self.total_executions,
            "last_anomaly_rate": self.last_anomaly_rate,
            "last_correction_count": self.last_correction_count,
        }


@dataclass(frozen=True)
class DensityObservation:
    """
    What a batch saw for one signature.

    ``executions`` is the number of individuals that exercised the pattern,
    ``anomalies`` how many of them hit a data-quality or config anomaly.
    """

    signature: str
    executions: int
    anomalies: int = 0
    corrections: int = 0

    @property
    def anomaly_rate(self) -> float:
        if self.executions <= 0:
            return 0.0
        return self.anomalies / self.executions


def pattern_signature(plan_id: Any, variant_id: str, component: Any) -> str:
    """
    Deterministic signature for one plan/variant/component combination.

    The component type is part of the key so a retyped component starts
    from a fresh ``full_trace`` history.
    """

    return f"{plan_id}:{variant_id}:{component.id}:{component.component_type}"


def unresolved_variant_signature(plan_id: Any) -> str:
    """Plan-level signature for individuals no variant applies to."""

    return f"{plan_id}:*:variant_resolution:unresolved"


def merge_observations(observations: list[DensityObservation]) -> list[DensityObservation]:
    """Fold per-individual observations into one per signature, sorted by signature."""

    merged: dict[str, DensityObservation] = {}
    for obs in observations:
        prior = merged.get(obs.signature)
        if prior is None:
            merged[obs.signature] = obs
            continue
        merged[obs.signature] = DensityObservation(
            signature=obs.signature,
            executions=prior.executions + obs.executions,
            anomalies=prior.anomalies + obs.anomalies,
            corrections=prior.corrections + obs.corrections,
        )
    return [merged[key] for key in sorted(merged)]


class PatternDensityTracker:
    """Applies :class:`DensityPolicy` to density state."""

    def __init__(self, policy: DensityPolicy | None = None) -> None:
        self._policy = policy or DensityPolicy()

    @property
    def policy(self) -> DensityPolicy:
        return self._policy

    def resolve_mode(self, state: DensityState | None) -> str:
        if state is None:
            return ExecutionMode.FULL_TRACE
        return state.execution_mode

    def classify(self, confidence: float, total_executions: int) -> str:
        policy = self._policy
        if confidence < policy.full_trace_max:
            return ExecutionMode.FULL_TRACE
        if confidence >= policy.silent_min and total_executions >= policy.silent_min_executions:
            return ExecutionMode.SILENT
        return ExecutionMode.LIGHT_TRACE

    def update(self, state: DensityState | None, observation: DensityObservation) -> DensityState:
        """
        Return the state that follows *state* after *observation*.

        Observations without executions and without corrections leave the
        state unchanged (apart from creating it on first sight).
        """
        prior = state or DensityState(signature=observation.signature)
        total = prior.total_executions + max(0, observation.executions)

        if observation.anomalies > 0 or observation.corrections > 0:
            return replace(
                prior,
                confidence=_clamp(prior.confidence * self._policy.anomaly_decay),
                execution_mode=ExecutionMode.FULL_TRACE,
                total_executions=total,
                last_anomaly_rate=observation.anomaly_rate,
                last_correction_count=observation.corrections,
            )

        if observation.executions <= 0:
            return prior

        confidence = _clamp(prior.confidence + (1.0 - prior.confidence) * self._policy.learning_rate)
        return replace(
            prior,
            confidence=confidence,
            execution_mode=self.classify(confidence, total),
            total_executions=total,
            last_anomaly_rate=0.0,
            last_correction_count=0,
        )


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
