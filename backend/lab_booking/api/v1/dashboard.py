from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.api.deps import get_current_user
from lab_booking.config import get_settings
from lab_booking.core.timeutils import lab_now, lab_timezone
from lab_booking.database import get_db
from lab_booking.models.booking import Booking
from lab_booking.models.user import User
from lab_booking.schemas.dashboard import ComputerAvailability, StatusBooking, StatusResponse
from lab_booking.services.computer import ComputerService

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@router.get("/status", response_model=StatusResponse)
async def get_lab_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Current status of every active computer with its current and next booking."""
    now = lab_now(lab_timezone(get_settings().LAB_TIMEZONE))
    snapshots = await ComputerService.availability(db, now)

    def _to_status(b: Booking | None) -> StatusBooking | None:
        if b is None:
            return None
        return StatusBooking(
            id=b.id,
            reference=b.reference,
            user_id=b.user_id,
            user_name=b.requester.name if b.requester else "Unknown",
            start_date=b.start_date,
            end_date=b.end_date,
            start_time=b.start_time,
            end_time=b.end_time,
            is_mine=b.user_id == current_user.external_id,
        )

    return StatusResponse(
        computers=[
            ComputerAvailability(
                id=s.computer.id,
                name=s.computer.name,
                location=s.computer.location,
                status=s.computer.status,
                current_booking=_to_status(s.current),
                next_booking=_to_status(s.next),
            )
            for s in snapshots
        ]
    )
