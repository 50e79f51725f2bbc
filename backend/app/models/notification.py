from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class NotificationStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


# Statuses that settle a dedupe key; only failed attempts may be dispatched again.
SETTLED_NOTIFICATION_STATUSES = frozenset(
    {NotificationStatus.SENT, NotificationStatus.DELIVERED, NotificationStatus.BOUNCED}
)


class NotificationLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "notification_logs"
    # One dispatch attempt per dedupe key and retry number; provider outcome rows leave it null.
    __table_args__ = (UniqueConstraint("dedupe_key", "attempt_number", name="uq_notification_logs_attempt"),)

    request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    recipient: str = Field(index=True)
    channel: str = Field(default="email", max_length=16)
    notification_type: str = Field(max_length=64, index=True)
    dedupe_key: str = Field(max_length=512, index=True)
    status: NotificationStatus = Field(index=True)
    retry_count: int = Field(default=0)
    attempt_number: int | None = Field(default=None)
    next_attempt_at: datetime | None = Field(default=None, index=True)
    exhausted: bool = Field(default=False)
    provider_message_id: str | None = Field(default=None, max_length=255, index=True)
    error_message: str | None = Field(default=None)
    payload: dict | None = Field(default=None, sa_type=JSON)


class UserNotification(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "user_notifications"

    request_id: UUID = Field(foreign_key="signing_requests.id", index=True)
    recipient_id: UUID = Field(foreign_key="users.id", index=True)
    dedupe_key: str = Field(max_length=512, index=True)
    event_type: str = Field(max_length=64)
    payload: dict | None = Field(default=None, sa_type=JSON)
    read_at: datetime | None = Field(default=None, index=True)
