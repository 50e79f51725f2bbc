from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlmodel import Session, func, select

from app.core.errors import InvalidRequest
from app.models.base import utcnow
from app.models.notification import UserNotification


class UserNotificationService:
    """In-app inbox written by the notification dispatcher."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_notifications(
        self,
        *,
        recipient_id: UUID,
        request_id: UUID | None = None,
        limit: int = 20,
        offset: int = 0,
        only_unread: bool = False,
    ) -> tuple[list[UserNotification], int]:
        query = select(UserNotification).where(UserNotification.recipient_id == recipient_id)
        if request_id:
            query = query.where(UserNotification.request_id == request_id)
        if only_unread:
            query = query.where(UserNotification.read_at.is_(None))
        query = query.order_by(UserNotification.created_at.desc()).offset(offset).limit(limit)
        items = list(self.session.exec(query).all())

        unread_count = self.session.exec(
            select(func.count())
            .select_from(UserNotification)
            .where(UserNotification.recipient_id == recipient_id)
            .where(UserNotification.read_at.is_(None))
        ).one()
        return items, int(unread_count or 0)

    def mark_as_read(
        self,
        *,
        recipient_id: UUID,
        notification_id: UUID,
        now: datetime | None = None,
    ) -> UserNotification:
        notification = self.session.get(UserNotification, notification_id)
        if not notification or notification.recipient_id != recipient_id:
            raise InvalidRequest("Notification not found")
        if not notification.read_at:
            notification.read_at = now or utcnow()
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
        return notification

    def mark_all_as_read(self, *, recipient_id: UUID, now: datetime | None = None) -> int:
        result = self.session.execute(
            update(UserNotification)
            .where(UserNotification.recipient_id == recipient_id)
            .where(UserNotification.read_at.is_(None))
            .values(read_at=now or utcnow()),
            execution_options={"synchronize_session": False},
        )
        self.session.commit()
        return int(result.rowcount or 0)
