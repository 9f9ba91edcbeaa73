"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from studio_booking.api.routes import attendance, classes, reservations, sweeps

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(classes.router)
api_router.include_router(reservations.router)
api_router.include_router(attendance.router)
api_router.include_router(sweeps.router)
