"""
app/services package marker.
"""

from app.services.calculation_orchestrator import (
    CalculationOrchestrator,
    CalculationRunResult,
)
from app.services.density_service import DensityService, get_density_service
from app.services.lifecycle_service import LifecycleService, get_lifecycle_service

__all__ = [
    "CalculationOrchestrator",
    "CalculationRunResult",
    "DensityService",
    "get_density_service",
    "LifecycleService",
    "get_lifecycle_service",
]
