import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time

from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from lab_booking.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from lab_booking.core.timeutils import intervals_overlap
from lab_booking.models.booking import ALLOWED_TRANSITIONS, Booking, BookingStatus
from lab_booking.models.lab_computer import ComputerStatus, LabComputer
from lab_booking.models.user import User
from lab_booking.schemas.booking import ProjectMetadata
from lab_booking.services.booking_validator import (
    BookingRules,
    BookingValidationError,
    ValidationCode,
    validate_interval,
)
from lab_booking.services.notification import NotificationEmitter

logger = logging.getLogger(__name__)


class ErrorCode:
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    BOOKING_NOT_FOUND = "BookingNotFound"
    FORBIDDEN = "Forbidden"
    MISSING_REJECTION_REASON = "MissingRejectionReason"
    INVALID_STATUS = "InvalidStatus"
    INVALID_STATE = "InvalidState"
    OVERLAPPING_BOOKING = "OverlappingBooking"
    CONCURRENT_MODIFICATION = "ConcurrentModification"


# Targets an admin may request through set_status
ADMIN_TARGETS = (BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED)


def elapsed_condition(now: datetime):
    """SQL form of the expiration predicate for lab-local ``now``.

    A booking has elapsed when its end date is in the past, or when it ends
    today at a time earlier than the current minute.
    """
    today, current = now.date(), now.time()
    return or_(
        Booking.end_date < today,
        and_(Booking.end_date == today, Booking.end_time < current),
    )


def is_elapsed(booking: Booking, now: datetime) -> bool:
    today = now.date()
    return booking.end_date < today or (
        booking.end_date == today and booking.end_time < now.time()
    )


def _require_admin(current_user: User) -> None:
    if not current_user.is_admin:
        raise ForbiddenError("Admin access required", ErrorCode.FORBIDDEN)


def _ensure_transition(booking: Booking, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[booking.status]:
        raise ConflictError(
            f"Cannot change a {booking.status.value} booking to {target.value}",
            ErrorCode.INVALID_STATE,
        )


def _occupy(computer: LabComputer) -> None:
    if computer.status != ComputerStatus.MAINTENANCE:
        computer.status = ComputerStatus.BOOKED


@asynccontextmanager
async def _transition(db: AsyncSession):
    """Commit everything done inside the block, or nothing."""
    try:
        yield
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConflictError(
            "Booking was modified by another request, please retry",
            ErrorCode.CONCURRENT_MODIFICATION,
        )
    except Exception:
        await db.rollback()
        raise


class BookingService:
    @staticmethod
    async def get_by_id(
        db: AsyncSession, booking_id: uuid.UUID, for_update: bool = False
    ) -> Booking:
        """Get a booking by ID, optionally locking its row."""
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking not found", ErrorCode.BOOKING_NOT_FOUND)
        return booking

    @staticmethod
    async def get_visible(
        db: AsyncSession, booking_id: uuid.UUID, current_user: User
    ) -> Booking:
        booking = await BookingService.get_by_id(db, booking_id)
        if booking.user_id != current_user.external_id and not current_user.is_admin:
            raise ForbiddenError("You can only view your own bookings", ErrorCode.FORBIDDEN)
        return booking

    @staticmethod
    async def lock_computers(db: AsyncSession, *computer_ids: uuid.UUID) -> None:
        """Hold the row lock of each computer until the transaction ends.

        Every change to a computer's bookings or status takes this lock first,
        so overlap and release checks on one computer run one at a time. The
        no-op UPDATE locks on every backend; SQLite ignores FOR UPDATE.
        """
        for computer_id in sorted(set(computer_ids), key=str):
            await db.execute(
                update(LabComputer)
                .where(LabComputer.id == computer_id)
                .values(status=LabComputer.status, updated_at=LabComputer.updated_at)
                .execution_options(synchronize_session=False)
            )
        if computer_ids:
            await db.execute(
                select(LabComputer)
                .where(LabComputer.id.in_(computer_ids))
                .execution_options(populate_existing=True)
            )

    @staticmethod
    async def get_for_transition(
        db: AsyncSession, booking_id: uuid.UUID, *other_computer_ids: uuid.UUID
    ) -> Booking:
        """Load a booking with its computer (and any others given) locked and freshly read."""
        booking = await BookingService.get_by_id(db, booking_id)
        locked = None
        while booking.computer_id != locked:
            locked = booking.computer_id
            await BookingService.lock_computers(db, locked, *other_computer_ids)
            booking = await BookingService.get_by_id(db, booking_id, for_update=True)
        return booking

    @staticmethod
    async def _get_computer(db: AsyncSession, computer_id: uuid.UUID) -> LabComputer:
        result = await db.execute(
            select(LabComputer).where(
                LabComputer.id == computer_id,
                LabComputer.is_active.is_(True),
            )
        )
        computer = result.scalar_one_or_none()
        if computer is None:
            raise NotFoundError("Computer not found", ErrorCode.RESOURCE_NOT_FOUND)
        return computer

    @staticmethod
    async def has_other_approved(
        db: AsyncSession, computer_id: uuid.UUID, exclude_id: uuid.UUID | None = None
    ) -> bool:
        conditions = [
            Booking.computer_id == computer_id,
            Booking.status == BookingStatus.APPROVED,
        ]
        if exclude_id is not None:
            conditions.append(Booking.id != exclude_id)
        count = (
            await db.execute(select(func.count(Booking.id)).where(*conditions))
        ).scalar()
        return bool(count)

    @staticmethod
    async def _release(db: AsyncSession, computer: LabComputer | None, booking: Booking) -> None:
        """Mark the computer available unless another approved booking still holds it."""
        if computer is None:
            logger.warning("Computer %s for booking %s not found", booking.computer_id, booking.id)
            return
        # The triggering booking's new status must be visible to the query below.
        await db.flush()
        if computer.status != ComputerStatus.BOOKED:
            logger.debug(
                "Computer %s was not booked, current status: %s",
                computer.id,
                computer.status.value,
            )
            return
        if await BookingService.has_other_approved(db, computer.id, exclude_id=booking.id):
            logger.debug("Computer %s still held by another approved booking", computer.id)
            return
        computer.status = ComputerStatus.AVAILABLE
        logger.info("Computer %s (%s) status updated to: available", computer.name, computer.id)

    @staticmethod
    async def find_overlap(
        db: AsyncSession,
        computer_id: uuid.UUID,
        starts_at: datetime,
        ends_at: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> Booking | None:
        """Return an approved booking on the computer overlapping the given instants."""
        conditions = [
            Booking.computer_id == computer_id,
            Booking.status == BookingStatus.APPROVED,
            Booking.start_date <= ends_at.date(),
            Booking.end_date >= starts_at.date(),
        ]
        if exclude_id is not None:
            conditions.append(Booking.id != exclude_id)
        result = await db.execute(select(Booking).where(*conditions))
        for other in result.scalars().all():
            if intervals_overlap(starts_at, ends_at, other.starts_at, other.ends_at):
                return other
        return None

    @staticmethod
    async def create(
        db: AsyncSession,
        current_user: User,
        computer_id: uuid.UUID | None,
        start_date: date | None,
        end_date: date | None,
        start_time: time | None,
        end_time: time | None,
        reason: str | None,
        project: ProjectMetadata | None = None,
        rules: BookingRules | None = None,
    ) -> Booking:
        """Validate and store a pending booking request, then notify admins."""
        if computer_id is None or not (reason or "").strip():
            raise BookingValidationError(
                "Missing required fields", ValidationCode.MISSING_FIELDS
            )
        interval = validate_interval(start_date, end_date, start_time, end_time, rules)

        async with _transition(db):
            await BookingService.lock_computers(db, computer_id)
            computer = await BookingService._get_computer(db, computer_id)
            booking = Booking(
                user_id=current_user.external_id,
                computer_id=computer.id,
                start_date=interval.start_date,
                end_date=interval.end_date,
                start_time=interval.start_time,
                end_time=interval.end_time,
                reason=reason.strip(),
                status=BookingStatus.PENDING,
                project=project.model_dump(mode="json") if project else None,
            )
            booking.computer = computer
            db.add(booking)
            await db.flush()

            await NotificationEmitter(db).booking_created(booking, computer)

        logger.info(
            "Booking %s created by %s for computer %s", booking.id, booking.user_id, computer.id
        )
        return booking

    @staticmethod
    async def approve(
        db: AsyncSession, current_user: User, booking_id: uuid.UUID
    ) -> Booking:
        _require_admin(current_user)
        async with _transition(db):
            booking = await BookingService.get_for_transition(db, booking_id)
            _ensure_transition(booking, BookingStatus.APPROVED)

            conflict = await BookingService.find_overlap(
                db, booking.computer_id, booking.starts_at, booking.ends_at, exclude_id=booking.id
            )
            if conflict is not None:
                raise ConflictError(
                    f"Computer is already booked by approved booking {conflict.reference} "
                    "during this time",
                    ErrorCode.OVERLAPPING_BOOKING,
                )

            booking.status = BookingStatus.APPROVED
            computer = booking.computer
            _occupy(computer)
            NotificationEmitter(db).booking_approved(booking, computer)

        logger.info("Booking %s approved by %s", booking.id, current_user.external_id)
        return booking

    @staticmethod
    async def reject(
        db: AsyncSession,
        current_user: User,
        booking_id: uuid.UUID,
        rejection_reason: str | None,
    ) -> Booking:
        _require_admin(current_user)
        if not (rejection_reason or "").strip():
            raise BadRequestError(
                "Rejection reason is required", ErrorCode.MISSING_REJECTION_REASON
            )

        async with _transition(db):
            booking = await BookingService.get_for_transition(db, booking_id)
            _ensure_transition(booking, BookingStatus.REJECTED)

            booking.status = BookingStatus.REJECTED
            booking.rejection_reason = rejection_reason.strip()
            computer = booking.computer
            await BookingService._release(db, computer, booking)
            NotificationEmitter(db).booking_rejected(booking, computer)

        logger.info("Booking %s rejected by %s", booking.id, current_user.external_id)
        return booking

    @staticmethod
    async def cancel(
        db: AsyncSession, current_user: User, booking_id: uuid.UUID
    ) -> Booking:
        """Cancel a booking. Owners may cancel while pending, admins until terminal."""
        async with _transition(db):
            booking = await BookingService.get_for_transition(db, booking_id)

            if not current_user.is_admin and booking.user_id != current_user.external_id:
                raise ForbiddenError("You can only cancel your own bookings", ErrorCode.FORBIDDEN)
            if booking.status.is_terminal:
                raise ConflictError(
                    f"Booking is already {booking.status.value}", ErrorCode.INVALID_STATE
                )
            if not current_user.is_admin and booking.status != BookingStatus.PENDING:
                raise ConflictError(
                    "Only pending bookings can be cancelled", ErrorCode.INVALID_STATE
                )

            booking.status = BookingStatus.CANCELLED
            computer = booking.computer
            await BookingService._release(db, computer, booking)
            NotificationEmitter(db).booking_cancelled(
                booking, computer, actor_id=current_user.external_id
            )

        logger.info("Booking %s cancelled by %s", booking.id, current_user.external_id)
        return booking

    @staticmethod
    async def set_status(
        db: AsyncSession,
        current_user: User,
        booking_id: uuid.UUID,
        target: str,
        rejection_reason: str | None = None,
    ) -> Booking:
        """Admin decision on a booking: approve, reject or cancel."""
        _require_admin(current_user)
        try:
            status = BookingStatus(target)
        except ValueError:
            status = None
        if status not in ADMIN_TARGETS:
            raise BadRequestError("Invalid status", ErrorCode.INVALID_STATUS)

        if status == BookingStatus.APPROVED:
            return await BookingService.approve(db, current_user, booking_id)
        if status == BookingStatus.REJECTED:
            return await BookingService.reject(db, current_user, booking_id, rejection_reason)
        return await BookingService.cancel(db, current_user, booking_id)

    @staticmethod
    async def reschedule(
        db: AsyncSession,
        current_user: User,
        booking_id: uuid.UUID,
        computer_id: uuid.UUID | None = None,
        start_time: time | None = None,
        end_time: time | None = None,
        end_date: date | None = None,
        rules: BookingRules | None = None,
    ) -> Booking:
        """Move an approved booking to another computer and/or time. Admin only."""
        _require_admin(current_user)
        moved_to = [computer_id] if computer_id is not None else []
        async with _transition(db):
            booking = await BookingService.get_for_transition(db, booking_id, *moved_to)
            if booking.status != BookingStatus.APPROVED:
                raise ConflictError(
                    "Can only update approved bookings", ErrorCode.INVALID_STATE
                )

            interval = validate_interval(
                booking.start_date,
                end_date if end_date is not None else booking.end_date,
                start_time if start_time is not None else booking.start_time,
                end_time if end_time is not None else booking.end_time,
                rules,
            )

            old_computer = booking.computer
            new_computer = old_computer
            if computer_id is not None and computer_id != booking.computer_id:
                new_computer = await BookingService._get_computer(db, computer_id)

            conflict = await BookingService.find_overlap(
                db, new_computer.id, interval.starts_at, interval.ends_at, exclude_id=booking.id
            )
            if conflict is not None:
                raise ConflictError(
                    f"Computer is already booked by approved booking {conflict.reference} "
                    "during this time",
                    ErrorCode.OVERLAPPING_BOOKING,
                )

            booking.start_time = interval.start_time
            booking.end_time = interval.end_time
            booking.end_date = interval.end_date

            if new_computer is not old_computer:
                booking.computer = new_computer
                _occupy(new_computer)
                await BookingService._release(db, old_computer, booking)
                logger.info(
                    "Booking %s moved from computer %s to %s",
                    booking.id,
                    old_computer.id,
                    new_computer.id,
                )

        logger.info("Booking %s rescheduled by %s", booking.id, current_user.external_id)
        return booking

    @staticmethod
    async def expire(db: AsyncSession, booking_id: uuid.UUID, now: datetime) -> bool:
        """Complete an approved booking whose interval has elapsed at lab-local ``now``.

        Returns False without changes when the booking no longer qualifies.
        """
        async with _transition(db):
            booking = await BookingService.get_for_transition(db, booking_id)
            if booking.status != BookingStatus.APPROVED or not is_elapsed(booking, now):
                return False

            booking.status = BookingStatus.COMPLETED
            computer = booking.computer
            await BookingService._release(db, computer, booking)
            await NotificationEmitter(db).booking_expired(booking, computer)

        logger.info("Booking %s expired and processed", booking.id)
        return True

    @staticmethod
    async def list_expired_ids(db: AsyncSession, now: datetime) -> list[uuid.UUID]:
        result = await db.execute(
            select(Booking.id)
            .where(Booking.status == BookingStatus.APPROVED, elapsed_condition(now))
            .order_by(Booking.end_date, Booking.end_time)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_bookings(
        db: AsyncSession,
        user_id: str | None = None,
        computer_id: uuid.UUID | None = None,
        status: BookingStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Booking], int]:
        """List bookings, newest first, with optional filters."""
        conditions = []
        if user_id:
            conditions.append(Booking.user_id == user_id)
        if computer_id:
            conditions.append(Booking.computer_id == computer_id)
        if status:
            conditions.append(Booking.status == status)

        count_stmt = select(func.count(Booking.id)).where(*conditions)
        total = (await db.execute(count_stmt)).scalar()

        stmt = (
            select(Booking)
            .where(*conditions)
            .order_by(Booking.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def list_current(db: AsyncSession, now: datetime) -> list[Booking]:
        """Approved bookings that have not elapsed yet, soonest first."""
        result = await db.execute(
            select(Booking)
            .where(Booking.status == BookingStatus.APPROVED, not_(elapsed_condition(now)))
            .order_by(Booking.start_date, Booking.start_time)
        )
        return list(result.scalars().all())
