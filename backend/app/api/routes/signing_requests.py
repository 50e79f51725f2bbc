from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from app.api.deps import get_current_active_user, get_db
from app.models.base import utcnow
from app.models.user import User, UserRole
from app.models.workflow import ArtifactStatus, SigningRequest
from app.schemas.notification import NotificationLogRead
from app.schemas.workflow import (
    SignerActionPayload,
    SignerRead,
    SigningRequestCreate,
    SigningRequestRead,
    TransitionRead,
)
from app.services.engine import SigningEngine, deliver_in_background
from app.services.storage import get_storage
from app.services.workflow import TransitionContext, TransitionResult

router = APIRouter(prefix="/signing-requests", tags=["signing-requests"])


def _ensure_can_manage(request: SigningRequest, user: User) -> None:
    if request.owner_id == user.id:
        return
    if user.role == UserRole.ADMIN.value and user.organization_id and user.organization_id == request.organization_id:
        return
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signing request not found")


def _to_read(engine: SigningEngine, request: SigningRequest) -> SigningRequestRead:
    payload = SigningRequestRead.model_validate(request)
    payload.signers = [SignerRead.model_validate(item) for item in engine.registry.list_signers(request.id)]
    return payload


def _transition_response(result: TransitionResult) -> TransitionRead:
    return TransitionRead(
        request_id=result.request_id,
        signer_id=result.signer_id,
        action=result.action,
        request_status=result.request_status,
        signer_status=result.signer_status,
        changed=result.changed,
        second_factor_method=result.second_factor_method,
        affected_signer_ids=result.affected_signer_ids,
        events=[event.event_type.value for event in result.events],
    )


@router.post("", response_model=SigningRequestRead, status_code=status.HTTP_201_CREATED)
def create_signing_request(
    payload: SigningRequestCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SigningRequestRead:
    engine = SigningEngine(session)
    request = engine.registry.create_request(payload, owner=current_user)
    return _to_read(engine, request)


@router.get("/{request_id}", response_model=SigningRequestRead)
def get_signing_request(
    request_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SigningRequestRead:
    engine = SigningEngine(session)
    request = engine.registry.get_request(request_id)
    _ensure_can_manage(request, current_user)
    return _to_read(engine, request)


@router.post("/{request_id}/send", response_model=TransitionRead)
def send_signing_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TransitionRead:
    engine = SigningEngine(session)
    _ensure_can_manage(engine.registry.get_request(request_id), current_user)
    now = utcnow()
    result = engine.send_request(request_id, now, deliver=False)
    background_tasks.add_task(deliver_in_background, result, now)
    return _transition_response(result)


@router.post("/{request_id}/signers/{signer_id}/actions", response_model=TransitionRead)
def submit_signer_action(
    request_id: UUID,
    signer_id: UUID,
    payload: SignerActionPayload,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> TransitionRead:
    engine = SigningEngine(session)
    context = TransitionContext(
        now=utcnow(),
        code=payload.code,
        reason=payload.reason,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    result = engine.state_machine.submit_action(request_id, signer_id, payload.action, context)
    if result.changed:
        background_tasks.add_task(deliver_in_background, result, context.now)
    return _transition_response(result)


@router.get("/{request_id}/notifications", response_model=list[NotificationLogRead])
def list_request_notifications(
    request_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> list[NotificationLogRead]:
    engine = SigningEngine(session)
    _ensure_can_manage(engine.registry.get_request(request_id), current_user)
    return [NotificationLogRead.model_validate(item) for item in engine.dispatcher.list_for_request(request_id)]


@router.get("/{request_id}/artifact")
def download_completion_artifact(
    request_id: UUID,
    download: bool = False,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Response:
    engine = SigningEngine(session)
    signing_request = engine.registry.get_request(request_id)
    _ensure_can_manage(signing_request, current_user)
    if signing_request.artifact_status != ArtifactStatus.GENERATED or not signing_request.artifact_path:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Completion artifact not available")

    storage = get_storage()
    presigned = storage.presigned_url(path=signing_request.artifact_path)
    if presigned:
        return RedirectResponse(presigned, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    try:
        pdf_bytes = storage.load_bytes(signing_request.artifact_path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Completion artifact not found") from exc

    disposition = "attachment" if download else "inline"
    return Response(
        pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'{disposition}; filename="completion-certificate-{signing_request.id}.pdf"'},
    )
