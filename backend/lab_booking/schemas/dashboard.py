import uuid
from datetime import date, time

from pydantic import BaseModel

from lab_booking.models.lab_computer import ComputerStatus


class StatusBooking(BaseModel):
    id: uuid.UUID
    reference: str
    user_id: str
    user_name: str
    start_date: date
    end_date: date
    start_time: time
    end_time: time
    is_mine: bool = False


class ComputerAvailability(BaseModel):
    id: uuid.UUID
    name: str
    location: str | None
    status: ComputerStatus
    current_booking: StatusBooking | None = None
    next_booking: StatusBooking | None = None


class StatusResponse(BaseModel):
    computers: list[ComputerAvailability]


class SweepResponse(BaseModel):
    processed: int
    failed: int
