from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session

from app.api.deps import get_db, require_admin
from app.models.user import User
from app.schemas.audit import AuditEventList, AuditEventRead
from app.services.audit import AuditService

router = APIRouter(prefix="/audit", tags=["audit"])


def _service(session: Session) -> AuditService:
    return AuditService(session)


@router.get("/events", response_model=AuditEventList)
def list_events(
    event_type: Optional[str] = None,
    request_id: Optional[UUID] = None,
    actor_id: Optional[UUID] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    _: User = Depends(require_admin),
) -> AuditEventList:
    service = _service(session)
    items, total = service.list_events(
        event_type=event_type,
        request_id=request_id,
        actor_id=actor_id,
        start_at=start_at,
        end_at=end_at,
        page=page,
        page_size=page_size,
    )
    return AuditEventList(
        items=[AuditEventRead.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/events/{event_id}", response_model=AuditEventRead)
def get_event(
    event_id: UUID,
    session: Session = Depends(get_db),
    _: User = Depends(require_admin),
) -> AuditEventRead:
    log = _service(session).get_event(event_id)
    if not log:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit log not found")
    return AuditEventRead.model_validate(log)
