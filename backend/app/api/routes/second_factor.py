from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_current_active_user, get_db, require_admin
from app.models.user import User
from app.schemas.second_factor import (
    BackupCodesResponse,
    ExemptionCreate,
    ExemptionRead,
    ExemptionRevoke,
    SecondFactorConfirmRequest,
    SecondFactorSetupResponse,
)
from app.services.engine import SigningEngine
from app.services.second_factor import SecondFactorGate

router = APIRouter(prefix="/second-factor", tags=["second-factor"])


@router.post("/setup", response_model=SecondFactorSetupResponse)
def setup_second_factor(
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SecondFactorSetupResponse:
    return SecondFactorGate(session).enroll(current_user)


@router.post("/confirm", status_code=status.HTTP_204_NO_CONTENT)
def confirm_second_factor(
    payload: SecondFactorConfirmRequest,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> None:
    SecondFactorGate(session).confirm_enrollment(current_user, payload.code)


@router.post("/backup-codes", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BackupCodesResponse:
    codes = SecondFactorGate(session).regenerate_backup_codes(current_user)
    return BackupCodesResponse(backup_codes=codes)


@router.post("/exemptions", response_model=ExemptionRead, status_code=status.HTTP_201_CREATED)
def grant_exemption(
    payload: ExemptionCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> ExemptionRead:
    exemption = SigningEngine(session).grant_exemption(
        user_id=payload.user_id,
        organization_id=payload.organization_id,
        scope=payload.exemption_type,
        expires_at=payload.expires_at,
        granted_by=current_user.id,
        reason=payload.reason,
    )
    return ExemptionRead.model_validate(exemption)


@router.post("/exemptions/{exemption_id}/revoke", response_model=ExemptionRead)
def revoke_exemption(
    exemption_id: UUID,
    payload: ExemptionRevoke,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> ExemptionRead:
    exemption = SigningEngine(session).revoke_exemption(
        exemption_id=exemption_id,
        revoked_by=current_user.id,
        reason=payload.reason,
    )
    return ExemptionRead.model_validate(exemption)
