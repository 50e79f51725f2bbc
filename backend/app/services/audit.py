from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from app.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(
        self,
        event_type: str,
        actor_id: UUID | None = None,
        actor_email: str | None = None,
        request_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
        *,
        commit: bool = True,
        created_at: datetime | None = None,
    ) -> AuditLog:
        """Append an audit row.

        With ``commit=False`` the row joins the caller's transaction, so it is
        persisted (or discarded) together with the state change it describes.
        """
        log = AuditLog(
            request_id=request_id,
            event_type=event_type,
            actor_id=actor_id,
            actor_email=actor_email,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        if created_at is not None:
            log.created_at = created_at
        self.session.add(log)
        if commit:
            self.session.commit()
        return log

    def list_events(
        self,
        event_type: Optional[str] = None,
        request_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        query = select(AuditLog)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if request_id:
            query = query.where(AuditLog.request_id == request_id)
        if actor_id:
            query = query.where(AuditLog.actor_id == actor_id)
        if start_at:
            query = query.where(AuditLog.created_at >= start_at)
        if end_at:
            query = query.where(AuditLog.created_at <= end_at)

        total = self.session.exec(
            select(func.count()).select_from(query.subquery())
        ).one()

        items = self.session.exec(
            query.order_by(AuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def get_event(self, event_id: UUID) -> Optional[AuditLog]:
        return self.session.get(AuditLog, event_id)
