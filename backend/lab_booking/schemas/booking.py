import uuid
from datetime import date, datetime, time
from typing import Literal

from pydantic import BaseModel, Field

from lab_booking.models.booking import BookingStatus


class DatasetSize(BaseModel):
    value: float = Field(ge=0)
    unit: Literal["MB", "GB", "TB"] = "GB"


class ProjectMetadata(BaseModel):
    """Project description attached to a request; never interpreted by the engine."""

    requires_gpu: bool = False
    gpu_memory_required: int | None = Field(default=None, ge=0)
    problem_statement: str | None = None
    dataset_type: str | None = None
    dataset_size: DatasetSize | None = None
    dataset_link: str | None = None
    bottleneck_explanation: str | None = None


# Interval fields are optional here so that missing values surface as the
# engine's MissingFields error instead of a generic 422.
class BookingCreateRequest(BaseModel):
    computer_id: uuid.UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = Field(default=None, max_length=2000)
    project: ProjectMetadata | None = None


class BookingStatusUpdateRequest(BaseModel):
    status: str
    rejection_reason: str | None = Field(default=None, max_length=2000)


class BookingRescheduleRequest(BaseModel):
    computer_id: uuid.UUID | None = None
    start_time: time | None = None
    end_time: time | None = None
    end_date: date | None = None


class BookingComputerResponse(BaseModel):
    id: uuid.UUID
    name: str
    location: str | None
    specifications: str | None

    model_config = {"from_attributes": True}


class RequesterResponse(BaseModel):
    name: str
    email: str | None

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: uuid.UUID
    reference: str
    user_id: str
    computer_id: uuid.UUID
    start_date: date
    end_date: date
    start_time: time
    end_time: time
    reason: str
    status: BookingStatus
    rejection_reason: str | None
    project: ProjectMetadata | None = None
    created_at: datetime
    updated_at: datetime
    computer: BookingComputerResponse | None = None

    model_config = {"from_attributes": True}


class AdminBookingResponse(BookingResponse):
    requester: RequesterResponse | None = None


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int


class AdminBookingListResponse(BaseModel):
    items: list[AdminBookingResponse]
    total: int
