from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Sequence
from uuid import UUID

from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import InvalidRequest, RequestNotFound, SignerNotFound
from app.models.base import utcnow
from app.models.organization import Organization
from app.models.user import User
from app.models.workflow import (
    Signer,
    SignerStatus,
    SigningMode,
    SigningRequest,
    SigningRequestStatus,
    TERMINAL_SIGNER_STATUSES,
)
from app.schemas.workflow import SigningRequestCreate


class SignerRegistry:
    """Ordered signers of a request and their individual status."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Request setup ---------------------------------------------------------
    def create_request(
        self,
        payload: SigningRequestCreate,
        *,
        owner: User | None = None,
        owner_email: str | None = None,
        now: datetime | None = None,
    ) -> SigningRequest:
        now = now or utcnow()
        email = (owner.email if owner else owner_email) or ""
        if not email.strip():
            raise InvalidRequest("Owner e-mail is required")
        if not payload.signers:
            raise InvalidRequest("A signing request needs at least one signer")

        self._validate_orders(payload)

        seen_emails: set[str] = set()
        for item in payload.signers:
            normalized = item.email.strip().lower()
            if normalized in seen_emails:
                raise InvalidRequest(f"Signer {item.email} is listed more than once")
            seen_emails.add(normalized)

        expires_at = payload.expires_at or now + timedelta(days=settings.default_expiry_days)
        if expires_at <= now:
            raise InvalidRequest("Expiry must be in the future")

        organization_id = owner.organization_id if owner else payload.organization_id
        organization = self.session.get(Organization, organization_id) if organization_id else None
        requires_second_factor = payload.requires_second_factor or bool(
            organization and organization.enforce_signing_second_factor
        )

        request = SigningRequest(
            organization_id=organization_id,
            owner_id=owner.id if owner else None,
            owner_email=email.strip().lower(),
            title=payload.title,
            message=payload.message,
            status=SigningRequestStatus.DRAFT,
            signing_mode=payload.signing_mode,
            requires_second_factor=requires_second_factor,
            expires_at=expires_at,
        )
        request.created_at = now
        self.session.add(request)
        self.session.flush()

        for index, item in enumerate(payload.signers, start=1):
            order = item.signing_order if item.signing_order is not None else index
            signer = Signer(
                request_id=request.id,
                user_id=self._resolve_user_id(item.email),
                email=item.email.strip().lower(),
                full_name=item.full_name,
                signing_order=order,
                notification_channel=item.notification_channel,
                phone_number=item.phone_number,
            )
            self.session.add(signer)

        self.session.commit()
        self.session.refresh(request)
        return request

    @staticmethod
    def _validate_orders(payload: SigningRequestCreate) -> None:
        if payload.signing_mode != SigningMode.SEQUENTIAL:
            return
        orders = [
            item.signing_order if item.signing_order is not None else index
            for index, item in enumerate(payload.signers, start=1)
        ]
        if len(set(orders)) != len(orders):
            raise InvalidRequest("Signing orders must be unique in sequential mode")
        if any(order < 1 for order in orders):
            raise InvalidRequest("Signing orders start at 1")

    def _resolve_user_id(self, email: str) -> UUID | None:
        user = self.session.exec(select(User).where(User.email == email.strip().lower())).first()
        return user.id if user else None

    # Lookups ---------------------------------------------------------------
    def get_request(self, request_id: UUID | str) -> SigningRequest:
        try:
            key = UUID(str(request_id))
        except (TypeError, ValueError) as exc:
            raise RequestNotFound() from exc
        request = self.session.get(SigningRequest, key)
        if not request:
            raise RequestNotFound()
        return request

    def list_signers(self, request_id: UUID) -> list[Signer]:
        return list(
            self.session.exec(
                select(Signer)
                .where(Signer.request_id == request_id)
                .order_by(Signer.signing_order, Signer.created_at)
            ).all()
        )

    def get_signer(self, signers: Iterable[Signer], signer_id: UUID | str) -> Signer:
        try:
            target = UUID(str(signer_id))
        except (TypeError, ValueError) as exc:
            raise SignerNotFound() from exc
        for signer in signers:
            if signer.id == target:
                return signer
        raise SignerNotFound()

    # Ordering --------------------------------------------------------------
    @staticmethod
    def blocking_signers(request: SigningRequest, signers: Sequence[Signer], signer: Signer) -> list[Signer]:
        """Signers that must sign before ``signer`` may; always empty in parallel mode."""
        if request.signing_mode != SigningMode.SEQUENTIAL:
            return []
        return [
            other
            for other in signers
            if other.signing_order < signer.signing_order and other.status != SignerStatus.SIGNED
        ]

    @staticmethod
    def outstanding(signers: Sequence[Signer]) -> list[Signer]:
        return [signer for signer in signers if signer.status not in TERMINAL_SIGNER_STATUSES]

    @classmethod
    def next_in_line(cls, request: SigningRequest, signers: Sequence[Signer]) -> list[Signer]:
        """Signers who can act right now."""
        pending = cls.outstanding(signers)
        if not pending:
            return []
        if request.signing_mode == SigningMode.PARALLEL:
            return pending
        lowest = min(signer.signing_order for signer in pending)
        return [signer for signer in pending if signer.signing_order == lowest]
