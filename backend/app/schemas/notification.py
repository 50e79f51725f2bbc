from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.notification import NotificationStatus
from app.schemas.common import IDModel, Timestamped


class NotificationLogRead(IDModel, Timestamped):
    request_id: UUID
    recipient: str
    channel: str
    notification_type: str
    status: NotificationStatus
    retry_count: int
    next_attempt_at: datetime | None
    exhausted: bool
    provider_message_id: str | None
    error_message: str | None


class DeliveryCallback(BaseModel):
    provider_message_id: str = Field(min_length=1, max_length=255)
    status: Literal["delivered", "bounced"]
    detail: str | None = None


class UserNotificationRead(IDModel, Timestamped):
    request_id: UUID
    event_type: str
    payload: dict | None = None
    read_at: datetime | None = None


class UserNotificationList(BaseModel):
    items: list[UserNotificationRead]
    unread_count: int


class NotificationMarkAllResponse(BaseModel):
    updated: int
