import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.api.deps import get_current_admin, get_current_user
from lab_booking.config import get_settings
from lab_booking.core.timeutils import lab_now, lab_timezone
from lab_booking.database import get_db
from lab_booking.models.booking import BookingStatus
from lab_booking.models.user import User
from lab_booking.schemas.booking import (
    AdminBookingListResponse,
    AdminBookingResponse,
    BookingCreateRequest,
    BookingListResponse,
    BookingRescheduleRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
)
from lab_booking.services.booking import BookingService

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingResponse, status_code=201)
async def create_booking(
    body: BookingCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Request a computer for a time interval. The booking starts out pending."""
    return await BookingService.create(
        db=db,
        current_user=current_user,
        computer_id=body.computer_id,
        start_date=body.start_date,
        end_date=body.end_date,
        start_time=body.start_time,
        end_time=body.end_time,
        reason=body.reason,
        project=body.project,
    )


@router.get("/", response_model=BookingListResponse)
async def list_my_bookings(
    status: BookingStatus | None = None,
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the current user's bookings, newest first."""
    bookings, total = await BookingService.list_bookings(
        db=db,
        user_id=current_user.external_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
    )


@router.get("/all", response_model=AdminBookingListResponse)
async def list_all_bookings(
    status: BookingStatus | None = None,
    computer_id: uuid.UUID | None = None,
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """List every booking with requester details. Admin only."""
    bookings, total = await BookingService.list_bookings(
        db=db,
        computer_id=computer_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return AdminBookingListResponse(
        items=[AdminBookingResponse.model_validate(b) for b in bookings],
        total=total,
    )


@router.get("/current", response_model=list[AdminBookingResponse])
async def list_current_bookings(
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """Approved bookings that have not ended yet. Admin only."""
    now = lab_now(lab_timezone(get_settings().LAB_TIMEZONE))
    bookings = await BookingService.list_current(db, now)
    return [AdminBookingResponse.model_validate(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Get a booking. Owner or admin."""
    return await BookingService.get_visible(db, booking_id, current_user)


@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: uuid.UUID,
    body: BookingStatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Approve, reject or cancel a booking. Admin only."""
    return await BookingService.set_status(
        db=db,
        current_user=current_user,
        booking_id=booking_id,
        target=body.status,
        rejection_reason=body.rejection_reason,
    )


@router.put("/{booking_id}/time", response_model=AdminBookingResponse)
async def reschedule_booking(
    booking_id: uuid.UUID,
    body: BookingRescheduleRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Move an approved booking to another computer or time. Admin only."""
    return await BookingService.reschedule(
        db=db,
        current_user=current_user,
        booking_id=booking_id,
        computer_id=body.computer_id,
        start_time=body.start_time,
        end_time=body.end_time,
        end_date=body.end_date,
    )


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Cancel a booking. Owners while pending, admins until it ends."""
    return await BookingService.cancel(db=db, current_user=current_user, booking_id=booking_id)
