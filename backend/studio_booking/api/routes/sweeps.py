"""
Internal trigger for the maintenance sweep (cron jobs, operators).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.deps import get_booking_context
from studio_booking.db.session import get_db
from studio_booking.schemas.attendance import SweepResponse
from studio_booking.services.context import BookingContext
from studio_booking.services.sweep_service import run_sweep

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post("/sweeps", response_model=SweepResponse)
async def trigger_sweep(
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Expire lapsed promotions, retry promotion notices and close out ended classes now."""
    report = await run_sweep(db, ctx)
    return SweepResponse.model_validate(report)
