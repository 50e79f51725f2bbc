from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlmodel import Session

from app.api.deps import get_current_active_user, get_db
from app.core.config import settings
from app.core.errors import InvalidRequest
from app.models.base import utcnow
from app.models.user import User
from app.schemas.notification import (
    DeliveryCallback,
    NotificationLogRead,
    NotificationMarkAllResponse,
    UserNotificationList,
    UserNotificationRead,
)
from app.services.notification import NotificationDispatcher
from app.services.user_notifications import UserNotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=UserNotificationList)
def list_notifications(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    only_unread: bool = Query(default=False),
    request_id: UUID | None = Query(default=None),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> UserNotificationList:
    service = UserNotificationService(session)
    items, unread_count = service.list_notifications(
        recipient_id=current_user.id,
        request_id=request_id,
        limit=limit,
        offset=offset,
        only_unread=only_unread,
    )
    return UserNotificationList(
        items=[UserNotificationRead.model_validate(item) for item in items],
        unread_count=unread_count,
    )


@router.post("/{notification_id}/read", response_model=UserNotificationRead)
def mark_notification_as_read(
    notification_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> UserNotificationRead:
    try:
        updated = UserNotificationService(session).mark_as_read(
            recipient_id=current_user.id,
            notification_id=notification_id,
        )
    except InvalidRequest as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found") from exc
    return UserNotificationRead.model_validate(updated)


@router.post("/read-all", response_model=NotificationMarkAllResponse)
def mark_all_notifications_as_read(
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> NotificationMarkAllResponse:
    updated = UserNotificationService(session).mark_all_as_read(recipient_id=current_user.id)
    return NotificationMarkAllResponse(updated=updated)


@router.post("/delivery", response_model=NotificationLogRead)
def delivery_callback(
    payload: DeliveryCallback,
    session: Session = Depends(get_db),
    x_callback_token: str | None = Header(default=None),
) -> NotificationLogRead:
    expected = settings.delivery_callback_token
    if expected and x_callback_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback token")
    dispatcher = NotificationDispatcher(session, transports={})
    if payload.status == "delivered":
        log = dispatcher.mark_delivered(payload.provider_message_id, utcnow(), payload.detail)
    else:
        log = dispatcher.mark_bounced(payload.provider_message_id, utcnow(), payload.detail)
    return NotificationLogRead.model_validate(log)
