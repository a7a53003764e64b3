"""
app/api/routers package marker.
"""

from app.api.routers.calculation_router import router as calculation_router
from app.api.routers.density_router import router as density_router

__all__ = [
    "calculation_router",
    "density_router",
]
