"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.calculation_batch import CalculationBatch, CalculationResult, LifecycleTransition
from db.models.fact_row import FactRow
from db.models.individual import Individual
from db.models.pattern_density import PatternDensity
from db.models.period import Period
from db.models.plan import Plan, PlanAssignment, PlanStatus
from db.models.tenant import Tenant

__all__ = [
    "CalculationBatch",
    "CalculationResult",
    "FactRow",
    "Individual",
    "LifecycleTransition",
    "PatternDensity",
    "Period",
    "Plan",
    "PlanAssignment",
    "PlanStatus",
    "Tenant",
]
