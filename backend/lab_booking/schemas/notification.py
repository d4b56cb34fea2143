import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from lab_booking.models.notification import NotificationType


class NotificationResponse(BaseModel):
    id: uuid.UUID
    title: str
    message: str
    type: NotificationType
    metadata: dict = Field(validation_alias="details")
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    total: int
