"""
compensation package.

Pure payout core: plan components, metric derivation, variant resolution,
component evaluation, pattern density policy and the batch lifecycle.
Nothing in this package performs I/O.
"""

from compensation.calculator import IndividualContext, IndividualOutcome, evaluate_individual
from compensation.density import (
    DensityObservation,
    DensityPolicy,
    DensityState,
    ExecutionMode,
    PatternDensityTracker,
)
from compensation.errors import (
    CompensationError,
    ConfigurationIssue,
    LifecycleTransitionError,
    MalformedRuleError,
    PlanConfigurationError,
)
from compensation.evaluators import evaluate_component
from compensation.lifecycle import LifecycleState
from compensation.metrics import FactRecord, MetricDerivationResolver
from compensation.plan import PlanDefinition, load_plan
from compensation.variants import VariantResolver

__all__ = [
    "CompensationError",
    "ConfigurationIssue",
    "DensityObservation",
    "DensityPolicy",
    "DensityState",
    "ExecutionMode",
    "FactRecord",
    "IndividualContext",
    "IndividualOutcome",
    "LifecycleState",
    "LifecycleTransitionError",
    "MalformedRuleError",
    "MetricDerivationResolver",
    "PatternDensityTracker",
    "PlanConfigurationError",
    "PlanDefinition",
    "VariantResolver",
    "evaluate_component",
    "evaluate_individual",
    "load_plan",
]
