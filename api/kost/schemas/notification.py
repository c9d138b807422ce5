import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from kost.models.enums import NotificationStatus, NotificationType


class NotificationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    type: NotificationType
    target_user_id: uuid.UUID | None = None
    target_property_id: uuid.UUID | None = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    message: str
    type: NotificationType
    status: NotificationStatus = NotificationStatus.UNREAD
    target_user_id: uuid.UUID | None = None
    target_property_id: uuid.UUID | None = None
    created_at: datetime | None = None


class NotificationFeed(BaseModel):
    """Snapshot pushed over the websocket after every change."""

    notifications: list[NotificationRead]
    unread_count: int
