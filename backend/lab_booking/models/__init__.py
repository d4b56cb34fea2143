from lab_booking.models.user import User, UserRole
from lab_booking.models.lab_computer import ComputerStatus, LabComputer
from lab_booking.models.booking import Booking, BookingStatus
from lab_booking.models.notification import Notification, NotificationType

__all__ = [
    "User",
    "UserRole",
    "LabComputer",
    "ComputerStatus",
    "Booking",
    "BookingStatus",
    "Notification",
    "NotificationType",
]
