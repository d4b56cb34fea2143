import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, not_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.core.exceptions import ConflictError, NotFoundError
from lab_booking.models.booking import Booking, BookingStatus
from lab_booking.models.lab_computer import ComputerStatus, LabComputer
from lab_booking.services.booking import BookingService, ErrorCode, elapsed_condition

logger = logging.getLogger(__name__)


@dataclass
class ComputerSnapshot:
    computer: LabComputer
    current: Booking | None = None
    next: Booking | None = None


class ComputerService:
    @staticmethod
    async def get_by_id(db: AsyncSession, computer_id: uuid.UUID) -> LabComputer:
        result = await db.execute(select(LabComputer).where(LabComputer.id == computer_id))
        computer = result.scalar_one_or_none()
        if computer is None:
            raise NotFoundError("Computer not found", ErrorCode.RESOURCE_NOT_FOUND)
        return computer

    @staticmethod
    async def list_computers(
        db: AsyncSession, is_active: bool | None = True
    ) -> tuple[list[LabComputer], int]:
        conditions = []
        if is_active is not None:
            conditions.append(LabComputer.is_active == is_active)

        total = (
            await db.execute(select(func.count(LabComputer.id)).where(*conditions))
        ).scalar()
        result = await db.execute(
            select(LabComputer).where(*conditions).order_by(LabComputer.name)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def set_maintenance(
        db: AsyncSession, computer_id: uuid.UUID, maintenance: bool
    ) -> LabComputer:
        """Put a computer into maintenance, or return it to its booking-derived status."""
        await BookingService.lock_computers(db, computer_id)
        computer = await ComputerService.get_by_id(db, computer_id)
        if maintenance:
            computer.status = ComputerStatus.MAINTENANCE
        elif computer.status == ComputerStatus.MAINTENANCE:
            held = await BookingService.has_other_approved(db, computer.id)
            computer.status = ComputerStatus.BOOKED if held else ComputerStatus.AVAILABLE
        await db.commit()
        logger.info("Computer %s status set to %s", computer.id, computer.status.value)
        return computer

    @staticmethod
    async def deactivate(db: AsyncSession, computer_id: uuid.UUID) -> None:
        """Soft-delete a computer that has no open bookings."""
        await BookingService.lock_computers(db, computer_id)
        computer = await ComputerService.get_by_id(db, computer_id)
        open_count = (
            await db.execute(
                select(func.count(Booking.id)).where(
                    Booking.computer_id == computer.id,
                    Booking.status.in_([BookingStatus.PENDING, BookingStatus.APPROVED]),
                )
            )
        ).scalar()
        if open_count:
            raise ConflictError(
                f"Computer has {open_count} pending or approved booking(s)",
                ErrorCode.INVALID_STATE,
            )
        computer.is_active = False
        await db.commit()

    @staticmethod
    async def availability(db: AsyncSession, now: datetime) -> list[ComputerSnapshot]:
        """Active computers with the approved booking in progress and the next one."""
        computers, _ = await ComputerService.list_computers(db, is_active=True)
        result = await db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.APPROVED,
                not_(elapsed_condition(now)),
                Booking.computer_id.in_([c.id for c in computers]),
            )
            .order_by(Booking.start_date, Booking.start_time)
        )
        snapshots = {c.id: ComputerSnapshot(computer=c) for c in computers}
        for booking in result.scalars().all():
            snapshot = snapshots[booking.computer_id]
            if booking.starts_at <= now:
                if snapshot.current is None:
                    snapshot.current = booking
            elif snapshot.next is None:
                snapshot.next = booking
        return list(snapshots.values())
