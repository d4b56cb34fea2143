import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from lab_booking.models.lab_computer import ComputerStatus


class ComputerCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    location: str | None = Field(default=None, max_length=200)
    specifications: str | None = None


class ComputerUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    location: str | None = Field(default=None, max_length=200)
    specifications: str | None = None


class MaintenanceRequest(BaseModel):
    maintenance: bool


class ComputerResponse(BaseModel):
    id: uuid.UUID
    name: str
    location: str | None
    specifications: str | None
    status: ComputerStatus
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ComputerListResponse(BaseModel):
    items: list[ComputerResponse]
    total: int
