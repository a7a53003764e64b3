"""
app/schemas package marker.
"""

from app.schemas.calculation import (
    BatchDetailResponse,
    BatchListResponse,
    BatchSummaryResponse,
    CalculationRunRequest,
    CalculationRunResponse,
    TransitionRequest,
)
from app.schemas.density import DensityListResponse, DensityStateResponse

__all__ = [
    "BatchDetailResponse",
    "BatchListResponse",
    "BatchSummaryResponse",
    "CalculationRunRequest",
    "CalculationRunResponse",
    "DensityListResponse",
    "DensityStateResponse",
    "TransitionRequest",
]
