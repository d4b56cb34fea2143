import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.core.exceptions import NotFoundError
from lab_booking.models.booking import Booking
from lab_booking.models.lab_computer import ComputerStatus, LabComputer
from lab_booking.models.notification import Notification, NotificationType
from lab_booking.models.user import User, UserRole

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """
    Decide which notifications a booking event produces and for whom.

    Records are only added to the session; the caller commits them together
    with the booking transition that caused them.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _admin_ids(self) -> list[str]:
        result = await self.db.execute(
            select(User.external_id).where(
                User.role == UserRole.ADMIN,
                User.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    def _details(
        booking: Booking,
        computer: LabComputer | None,
        *,
        with_specifications: bool = True,
        actor_id: str | None = None,
    ) -> dict:
        details = {
            "booking_id": str(booking.id),
            "booking_reference": booking.reference,
            "computer_id": str(computer.id if computer else booking.computer_id),
            "computer_name": computer.name if computer else "Unknown Computer",
        }
        if with_specifications and computer is not None:
            details["computer_specifications"] = computer.specifications
        if actor_id is not None:
            details["user_id"] = actor_id
        return details

    def _add(
        self,
        recipient: str,
        title: str,
        message: str,
        type_: NotificationType,
        details: dict,
    ) -> Notification:
        notification = Notification(
            user_id=recipient,
            title=title,
            message=message,
            type=type_,
            details=details,
        )
        self.db.add(notification)
        return notification

    async def booking_created(self, booking: Booking, computer: LabComputer) -> list[Notification]:
        admins = await self._admin_ids()
        message = (
            f"A new booking (ID: {booking.reference}) has been made for computer "
            f"{computer.name} ({computer.specifications}) by user {booking.user_id}."
        )
        details = self._details(booking, computer, actor_id=booking.user_id)
        notifications = [
            self._add(admin_id, "New Booking Request", message, NotificationType.INFO, dict(details))
            for admin_id in admins
        ]
        logger.debug("Booking %s: notified %d admin(s) of new request", booking.id, len(notifications))
        return notifications

    def booking_approved(self, booking: Booking, computer: LabComputer) -> Notification:
        return self._add(
            booking.user_id,
            "Booking Approved",
            f"Your booking (ID: {booking.reference}) for computer {computer.name} "
            f"({computer.specifications}) has been approved.",
            NotificationType.SUCCESS,
            self._details(booking, computer),
        )

    def booking_rejected(self, booking: Booking, computer: LabComputer) -> Notification:
        return self._add(
            booking.user_id,
            "Booking Rejected",
            f"Your booking (ID: {booking.reference}) for computer {computer.name} "
            f"({computer.specifications}) has been rejected. Reason: {booking.rejection_reason}",
            NotificationType.ERROR,
            self._details(booking, computer),
        )

    def booking_cancelled(
        self, booking: Booking, computer: LabComputer, actor_id: str
    ) -> Notification:
        return self._add(
            booking.user_id,
            "Booking Cancelled",
            f"Your booking (ID: {booking.reference}) for computer {computer.name} "
            f"({computer.specifications}) has been cancelled.",
            NotificationType.INFO,
            self._details(booking, computer, actor_id=actor_id),
        )

    async def booking_expired(
        self, booking: Booking, computer: LabComputer | None
    ) -> list[Notification]:
        computer_name = computer.name if computer else "Unknown Computer"
        # Wording follows the computer's status after release: another approved
        # booking or maintenance can keep it unavailable.
        released = computer is not None and computer.status == ComputerStatus.AVAILABLE
        ended = f"Your booking for {computer_name} (ID: {booking.reference}) has ended."
        notifications = [
            self._add(
                booking.user_id,
                "Booking Session Ended",
                f"{ended} The computer is now available for other users." if released else ended,
                NotificationType.INFO,
                self._details(booking, computer, with_specifications=False),
            )
        ]
        if released:
            title = "Computer Available"
            message = (
                f"Computer {computer_name} (ID: {booking.reference}) is now available "
                "after booking session ended."
            )
            kind = NotificationType.SUCCESS
        else:
            status = computer.status.value if computer else "unknown"
            title = "Booking Session Ended"
            message = (
                f"Booking session {booking.reference} on computer {computer_name} ended. "
                f"The computer remains {status}."
            )
            kind = NotificationType.INFO
        for admin_id in await self._admin_ids():
            notifications.append(
                self._add(
                    admin_id,
                    title,
                    message,
                    kind,
                    self._details(
                        booking, computer, with_specifications=False, actor_id=booking.user_id
                    ),
                )
            )
        return notifications


class NotificationService:
    @staticmethod
    async def list_for_user(
        db: AsyncSession, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[Notification], int]:
        conditions = [Notification.user_id == user_id]
        total = (
            await db.execute(select(func.count(Notification.id)).where(*conditions))
        ).scalar() or 0

        result = await db.execute(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def delete(db: AsyncSession, notification_id: uuid.UUID, user_id: str) -> None:
        result = await db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundError("Notification not found")
        await db.delete(notification)
        await db.commit()
