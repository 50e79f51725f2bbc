from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import ExemptionNotFound, InvalidRequest, SecondFactorInvalid, WorkflowErrorKind
from app.core.logging_setup import get_logger
from app.models.base import utcnow
from app.models.second_factor import ExemptionType, SecondFactorEnrollment, SecondFactorExemption
from app.models.user import User, UserRole
from app.models.workflow import SecondFactorMethod, Signer, SigningRequest
from app.schemas.second_factor import SecondFactorSetupResponse
from app.services.audit import AuditService
from app.utils.security import (
    build_otpauth_url,
    generate_backup_codes,
    generate_totp_secret,
    hash_backup_code,
    verify_totp,
)

logger = get_logger("second_factor")

_SCOPES_FOR: dict[ExemptionType, tuple[ExemptionType, ...]] = {
    ExemptionType.SIGNING: (ExemptionType.SIGNING, ExemptionType.BOTH),
    ExemptionType.LOGIN: (ExemptionType.LOGIN, ExemptionType.BOTH),
    ExemptionType.BOTH: (ExemptionType.BOTH,),
}


@dataclass
class VerificationResult:
    ok: bool
    used_backup_code: bool = False
    reason: str | None = None


@dataclass
class GateDecision:
    allowed: bool
    method: SecondFactorMethod | None = None
    error_kind: WorkflowErrorKind | None = None
    exemption_id: UUID | None = None


class SecondFactorGate:
    """TOTP / backup-code verification and time-boxed exemptions behind one decision."""

    def __init__(self, session: Session, audit_service: AuditService | None = None) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)

    # Identity --------------------------------------------------------------
    def _resolve_user(self, identifier: UUID | str) -> User | None:
        if isinstance(identifier, UUID):
            return self.session.get(User, identifier)
        text = str(identifier).strip()
        try:
            return self.session.get(User, UUID(text))
        except ValueError:
            pass
        return self.session.exec(select(User).where(User.email == text.lower())).first()

    def _get_enrollment(self, user_id: UUID) -> SecondFactorEnrollment | None:
        return self.session.exec(
            select(SecondFactorEnrollment).where(SecondFactorEnrollment.user_id == user_id)
        ).first()

    # Verification ----------------------------------------------------------
    def verify(self, identifier: UUID | str, code: str, now: datetime) -> VerificationResult:
        """Check a TOTP or backup code.

        A matching backup code is removed from the enrollment; the change is
        flushed but not committed, so it lands with the caller's transaction.
        """
        normalized = (code or "").strip().replace(" ", "")
        if not normalized:
            return VerificationResult(ok=False, reason="missing_code")
        user = self._resolve_user(identifier)
        if not user:
            return VerificationResult(ok=False, reason="unknown_user")
        enrollment = self._get_enrollment(user.id)
        if not enrollment or not enrollment.enabled:
            return VerificationResult(ok=False, reason="not_enrolled")

        if normalized.isdigit() and len(normalized) == 6:
            if verify_totp(enrollment.secret, normalized, for_time=now, valid_window=settings.totp_valid_window):
                enrollment.last_used_at = now
                self.session.add(enrollment)
                self.session.flush()
                return VerificationResult(ok=True)
            return VerificationResult(ok=False, reason="invalid_totp")

        if len(normalized) == 8:
            digest = hash_backup_code(normalized)
            remaining = list(enrollment.backup_code_hashes or [])
            if digest in remaining:
                remaining.remove(digest)
                enrollment.backup_code_hashes = remaining
                enrollment.last_used_at = now
                self.session.add(enrollment)
                self.session.flush()
                logger.info("Backup code consumed for user %s (%d left)", user.id, len(remaining))
                return VerificationResult(ok=True, used_backup_code=True)
        return VerificationResult(ok=False, reason="invalid_code")

    def has_active_exemption(
        self,
        user_id: UUID,
        organization_id: UUID | None,
        scope: ExemptionType,
        now: datetime,
    ) -> bool:
        return self.find_active_exemption(user_id, organization_id, scope, now) is not None

    def find_active_exemption(
        self,
        user_id: UUID,
        organization_id: UUID | None,
        scope: ExemptionType,
        now: datetime,
    ) -> SecondFactorExemption | None:
        statement = (
            select(SecondFactorExemption)
            .where(SecondFactorExemption.user_id == user_id)
            .where(SecondFactorExemption.exemption_type.in_(_SCOPES_FOR[scope]))
            .where(SecondFactorExemption.revoked_at.is_(None))
            .where(SecondFactorExemption.expires_at > now)
        )
        if organization_id is None:
            statement = statement.where(SecondFactorExemption.organization_id.is_(None))
        else:
            statement = statement.where(SecondFactorExemption.organization_id == organization_id)
        return self.session.exec(statement.order_by(SecondFactorExemption.expires_at.desc())).first()

    def check(self, request: SigningRequest, signer: Signer, code: str | None, now: datetime) -> GateDecision:
        if not request.requires_second_factor:
            return GateDecision(allowed=True, method=SecondFactorMethod.NOT_REQUIRED)

        user = self.session.get(User, signer.user_id) if signer.user_id else self._resolve_user(signer.email)
        if user:
            exemption = self.find_active_exemption(user.id, request.organization_id, ExemptionType.SIGNING, now)
            if exemption:
                return GateDecision(allowed=True, method=SecondFactorMethod.EXEMPTION, exemption_id=exemption.id)

        if not code or not code.strip():
            return GateDecision(allowed=False, error_kind=WorkflowErrorKind.SECOND_FACTOR_REQUIRED)

        result = self.verify(user.id if user else signer.email, code, now)
        if not result.ok:
            return GateDecision(allowed=False, error_kind=WorkflowErrorKind.SECOND_FACTOR_INVALID)
        method = SecondFactorMethod.BACKUP_CODE if result.used_backup_code else SecondFactorMethod.TOTP
        return GateDecision(allowed=True, method=method)

    # Enrollment ------------------------------------------------------------
    def enroll(self, user: User) -> SecondFactorSetupResponse:
        secret = generate_totp_secret()
        codes = generate_backup_codes(settings.backup_code_count)
        enrollment = self._get_enrollment(user.id)
        if enrollment is None:
            enrollment = SecondFactorEnrollment(user_id=user.id, secret=secret)
        enrollment.secret = secret
        enrollment.backup_code_hashes = [hash_backup_code(code) for code in codes]
        enrollment.enabled = False
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        self.session.commit()
        otpauth_url = build_otpauth_url(secret, user.email, settings.two_factor_issuer)
        return SecondFactorSetupResponse(secret=secret, otpauth_url=otpauth_url, backup_codes=codes)

    def confirm_enrollment(self, user: User, code: str, now: datetime | None = None) -> None:
        now = now or utcnow()
        enrollment = self._get_enrollment(user.id)
        if not enrollment:
            raise InvalidRequest("Second factor has not been set up")
        if not verify_totp(enrollment.secret, code.strip(), for_time=now, valid_window=settings.totp_valid_window):
            raise SecondFactorInvalid()
        enrollment.enabled = True
        enrollment.last_used_at = now
        self.session.add(enrollment)
        self.audit_service.record_event(
            event_type="second_factor_enabled",
            actor_id=user.id,
            actor_email=user.email,
            commit=False,
        )
        self.session.commit()

    def regenerate_backup_codes(self, user: User) -> list[str]:
        enrollment = self._get_enrollment(user.id)
        if not enrollment or not enrollment.enabled:
            raise InvalidRequest("Second factor is not enabled")
        codes = generate_backup_codes(settings.backup_code_count)
        enrollment.backup_code_hashes = [hash_backup_code(code) for code in codes]
        self.session.add(enrollment)
        self.audit_service.record_event(
            event_type="second_factor_backup_codes_regenerated",
            actor_id=user.id,
            actor_email=user.email,
            commit=False,
        )
        self.session.commit()
        return codes

    # Exemptions ------------------------------------------------------------
    def grant_exemption(
        self,
        user_id: UUID,
        organization_id: UUID | None,
        scope: ExemptionType,
        expires_at: datetime,
        granted_by: UUID,
        reason: str,
        now: datetime | None = None,
    ) -> SecondFactorExemption:
        now = now or utcnow()
        reason = (reason or "").strip()
        if not reason:
            raise InvalidRequest("A reason is required to grant an exemption")
        if expires_at <= now:
            raise InvalidRequest("Exemption expiry must be in the future")
        grantor = self.session.get(User, granted_by)
        if not grantor or not grantor.is_active or grantor.role != UserRole.ADMIN.value:
            raise InvalidRequest("Grantor is not allowed to manage exemptions")
        if organization_id is not None and grantor.organization_id != organization_id:
            raise InvalidRequest("Grantor does not belong to this organization")
        if not self.session.get(User, user_id):
            raise InvalidRequest("User not found")

        exemption = SecondFactorExemption(
            user_id=user_id,
            organization_id=organization_id,
            exemption_type=scope,
            reason=reason,
            granted_by=granted_by,
            expires_at=expires_at,
        )
        exemption.created_at = now
        self.session.add(exemption)
        self.session.flush()
        self.audit_service.record_event(
            event_type="second_factor_exemption_granted",
            actor_id=grantor.id,
            actor_email=grantor.email,
            details={
                "exemption_id": str(exemption.id),
                "user_id": str(user_id),
                "organization_id": str(organization_id) if organization_id else None,
                "exemption_type": scope.value,
                "expires_at": expires_at.isoformat(),
                "reason": reason,
            },
            commit=False,
            created_at=now,
        )
        self.session.commit()
        self.session.refresh(exemption)
        logger.info("Exemption %s granted to %s by %s", exemption.id, user_id, granted_by)
        return exemption

    def revoke_exemption(
        self,
        exemption_id: UUID,
        revoked_by: UUID,
        reason: str,
        now: datetime | None = None,
    ) -> SecondFactorExemption:
        now = now or utcnow()
        reason = (reason or "").strip()
        if not reason:
            raise InvalidRequest("A reason is required to revoke an exemption")
        exemption = self.session.get(SecondFactorExemption, exemption_id)
        if not exemption:
            raise ExemptionNotFound()
        if exemption.revoked_at is not None:
            raise InvalidRequest("Exemption already revoked")
        revoker = self.session.get(User, revoked_by)
        if not revoker or not revoker.is_active or revoker.role != UserRole.ADMIN.value:
            raise InvalidRequest("User is not allowed to manage exemptions")

        exemption.revoked_at = now
        exemption.revoked_by = revoked_by
        exemption.updated_at = now
        self.session.add(exemption)
        self.audit_service.record_event(
            event_type="second_factor_exemption_revoked",
            actor_id=revoker.id,
            actor_email=revoker.email,
            details={
                "exemption_id": str(exemption.id),
                "user_id": str(exemption.user_id),
                "was_active": exemption.expires_at > now,
                "reason": reason,
            },
            commit=False,
            created_at=now,
        )
        self.session.commit()
        self.session.refresh(exemption)
        logger.info("Exemption %s revoked by %s", exemption.id, revoked_by)
        return exemption
