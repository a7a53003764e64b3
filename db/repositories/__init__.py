"""
Repository layer exports.
"""

from db.repositories.calculation_repository import CalculationRepository
from db.repositories.density_repository import DensityRepository
from db.repositories.fact_repository import FactRepository, org_unit_from_fields
from db.repositories.plan_repository import PlanRepository

__all__ = [
    "CalculationRepository",
    "DensityRepository",
    "FactRepository",
    "PlanRepository",
    "org_unit_from_fields",
]
