from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import (
    ConcurrentConflict,
    InvalidRequest,
    OutOfOrder,
    PersistenceFailure,
    RequestAlreadyTerminal,
    RequestNotSent,
    SignerAlreadyTerminal,
    WorkflowError,
    error_for,
)
from app.core.logging_setup import get_logger
from app.models.workflow import (
    ArtifactStatus,
    OPEN_REQUEST_STATUSES,
    SecondFactorMethod,
    Signer,
    SignerStatus,
    SigningMode,
    SigningRequest,
    SigningRequestStatus,
)
from app.services.audit import AuditService
from app.services.cascade import CascadeResolver, TerminalEventKind
from app.services.events import NotificationType, WorkflowEvent
from app.services.second_factor import SecondFactorGate
from app.services.signer_registry import SignerRegistry

logger = get_logger("workflow")

T = TypeVar("T")


class SignerAction(str, Enum):
    SIGN = "sign"
    DECLINE = "decline"
    VIEW = "view"


@dataclass
class TransitionContext:
    now: datetime
    code: str | None = None
    reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class TransitionResult:
    request_id: UUID
    signer_id: UUID | None
    action: str
    request_status: SigningRequestStatus
    signer_status: SignerStatus | None
    changed: bool
    second_factor_method: SecondFactorMethod | None = None
    affected_signer_ids: list[UUID] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)


class WorkflowStateMachine:
    """Legal transitions of a signing request and its signers.

    Every state-changing write starts by bumping ``lock_version`` with a
    conditional UPDATE. Precondition checks and writes therefore form one
    atomic unit per request: a concurrent writer makes the UPDATE match zero
    rows and the attempt fails with ``CONCURRENT_CONFLICT``.
    """

    def __init__(
        self,
        session: Session,
        *,
        registry: SignerRegistry | None = None,
        gate: SecondFactorGate | None = None,
        cascade: CascadeResolver | None = None,
        audit_service: AuditService | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)
        self.registry = registry or SignerRegistry(session)
        self.gate = gate or SecondFactorGate(session, self.audit_service)
        self.cascade = cascade or CascadeResolver()
        self.max_retries = max(int(max_retries if max_retries is not None else settings.transition_max_retries), 1)

    # Public operations -----------------------------------------------------
    def submit_action(
        self,
        request_id: UUID | str,
        signer_id: UUID | str,
        action: SignerAction | str,
        context: TransitionContext,
    ) -> TransitionResult:
        """Run one signer action, retrying compare-and-swap conflicts a bounded number of times."""
        return self._with_retries(lambda: self.attempt_transition(request_id, signer_id, action, context))

    def attempt_transition(
        self,
        request_id: UUID | str,
        signer_id: UUID | str,
        action: SignerAction | str,
        context: TransitionContext,
    ) -> TransitionResult:
        try:
            action = SignerAction(action)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown action '{action}'") from exc

        request, signers = self._load(request_id)
        self._ensure_request_open(request, context.now)
        signer = self.registry.get_signer(signers, signer_id)

        if signer.is_terminal:
            if action == SignerAction.VIEW:
                return self._result(request, signer, action, changed=False)
            raise SignerAlreadyTerminal()

        if action == SignerAction.VIEW:
            return self._apply_view(request, signer, context)

        if action == SignerAction.SIGN and self.registry.blocking_signers(request, signers, signer):
            raise OutOfOrder()

        decision = self.gate.check(request, signer, context.code, context.now)
        if not decision.allowed:
            self._reject_second_factor(request, signer, action, decision.error_kind, context)

        try:
            self._claim(request)
            if action == SignerAction.SIGN:
                result = self._apply_sign(request, signers, signer, context, decision.method)
            else:
                result = self._apply_decline(request, signers, signer, context)
            self.audit_service.record_event(
                event_type=f"signer_{'signed' if action == SignerAction.SIGN else 'declined'}",
                actor_email=signer.email,
                request_id=request.id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details={
                    "signer_id": str(signer.id),
                    "second_factor_method": decision.method.value if decision.method else None,
                    "exemption_id": str(decision.exemption_id) if decision.exemption_id else None,
                    "request_status": request.status.value,
                    "affected_signer_ids": [str(item) for item in result.affected_signer_ids],
                },
                commit=False,
                created_at=context.now,
            )
            self.session.commit()
        except WorkflowError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Failed to persist %s on request %s", action.value, request.id)
            raise PersistenceFailure() from exc

        logger.info(
            "Signer %s %s request %s (status=%s)",
            signer.id,
            "signed" if action == SignerAction.SIGN else "declined",
            request.id,
            request.status.value,
        )
        return result

    def send_request(self, request_id: UUID | str, now: datetime) -> TransitionResult:
        """Move a draft to ``pending`` and ask the first signer(s) to act."""

        def attempt() -> TransitionResult:
            request, signers = self._load(request_id)
            if request.status != SigningRequestStatus.DRAFT:
                if request.is_terminal:
                    raise RequestAlreadyTerminal()
                raise InvalidRequest("Signing request was already sent")
            if not signers:
                raise InvalidRequest("A signing request needs at least one signer")
            if request.expires_at is not None and request.expires_at <= now:
                raise InvalidRequest("Expiry must be in the future")
            try:
                self._claim(request)
                request.status = SigningRequestStatus.PENDING
                request.sent_at = now
                request.updated_at = now
                self.session.add(request)
                self.audit_service.record_event(
                    event_type="signing_request_sent",
                    actor_email=request.owner_email,
                    request_id=request.id,
                    details={"signing_mode": request.signing_mode.value, "signers": len(signers)},
                    commit=False,
                    created_at=now,
                )
                self.session.commit()
            except WorkflowError:
                self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise PersistenceFailure() from exc

            targets = self.registry.next_in_line(request, signers)
            event = WorkflowEvent(
                event_type=NotificationType.SIGNATURE_REQUESTED,
                request_id=request.id,
                trigger="sent",
                occurred_at=now,
                signer_ids=tuple(signer.id for signer in targets),
            )
            return TransitionResult(
                request_id=request.id,
                signer_id=None,
                action="send",
                request_status=request.status,
                signer_status=None,
                changed=True,
                events=[event],
            )

        return self._with_retries(attempt)

    def expire_request(self, request_id: UUID | str, now: datetime) -> TransitionResult | None:
        """Force a past-due request to ``expired``; ``None`` when it no longer qualifies."""

        def attempt() -> TransitionResult | None:
            request, signers = self._load(request_id)
            if request.status not in OPEN_REQUEST_STATUSES:
                return None
            if request.expires_at is None or request.expires_at > now:
                return None
            try:
                self._claim(request)
                affected = self.cascade.on_terminal_signer_event(
                    request, signers, None, TerminalEventKind.EXPIRED, now
                )
                self.session.add(request)
                for signer in signers:
                    self.session.add(signer)
                self.audit_service.record_event(
                    event_type="signing_request_expired",
                    request_id=request.id,
                    details={
                        "expires_at": request.expires_at.isoformat(),
                        "affected_signer_ids": [str(item) for item in affected],
                    },
                    commit=False,
                    created_at=now,
                )
                self.session.commit()
            except WorkflowError:
                self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise PersistenceFailure() from exc

            logger.info("Request %s expired (%d signers closed)", request.id, len(affected))
            event = WorkflowEvent(
                event_type=NotificationType.REQUEST_EXPIRED,
                request_id=request.id,
                trigger=f"expired:{request.expires_at.isoformat()}",
                occurred_at=now,
            )
            return TransitionResult(
                request_id=request.id,
                signer_id=None,
                action="expire",
                request_status=request.status,
                signer_status=None,
                changed=True,
                affected_signer_ids=affected,
                events=[event],
            )

        return self._with_retries(attempt)

    # Loading and guards ----------------------------------------------------
    def _load(self, request_id: UUID | str) -> tuple[SigningRequest, list[Signer]]:
        request = self.registry.get_request(request_id)
        self.session.refresh(request)
        signers = list(
            self.session.exec(
                select(Signer)
                .where(Signer.request_id == request.id)
                .order_by(Signer.signing_order, Signer.created_at)
                .execution_options(populate_existing=True)
            ).all()
        )
        return request, signers

    @staticmethod
    def _ensure_request_open(request: SigningRequest, now: datetime) -> None:
        if request.is_terminal:
            raise RequestAlreadyTerminal()
        if request.status == SigningRequestStatus.DRAFT:
            raise RequestNotSent()
        if request.expires_at is not None and request.expires_at <= now:
            raise RequestAlreadyTerminal("Signing request has expired")

    def _claim(self, request: SigningRequest) -> None:
        expected = request.lock_version
        outcome = self.session.execute(
            update(SigningRequest)
            .where(SigningRequest.id == request.id)
            .where(SigningRequest.lock_version == expected)
            .values(lock_version=expected + 1),
            execution_options={"synchronize_session": False},
        )
        if outcome.rowcount != 1:
            raise ConcurrentConflict()
        set_committed_value(request, "lock_version", expected + 1)

    def _with_retries(self, operation: Callable[[], T]) -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except ConcurrentConflict:
                self.session.rollback()
                if attempt == self.max_retries:
                    logger.warning("Giving up after %d conflicting attempts", attempt)
                    raise
                logger.info("Concurrent update detected, retrying (%d/%d)", attempt, self.max_retries)
        raise ConcurrentConflict()

    def _reject_second_factor(
        self,
        request: SigningRequest,
        signer: Signer,
        action: SignerAction,
        kind,
        context: TransitionContext,
    ) -> None:
        self.session.rollback()
        self.audit_service.record_event(
            event_type="second_factor_rejected",
            actor_email=signer.email,
            request_id=request.id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"signer_id": str(signer.id), "action": action.value, "kind": kind.value},
            created_at=context.now,
        )
        raise error_for(kind)

    # Effects ---------------------------------------------------------------
    def _apply_view(self, request: SigningRequest, signer: Signer, context: TransitionContext) -> TransitionResult:
        if signer.status != SignerStatus.PENDING:
            return self._result(request, signer, SignerAction.VIEW, changed=False)
        try:
            self._claim(request)
            signer.status = SignerStatus.VIEWED
            signer.viewed_at = context.now
            signer.ip_address = context.ip_address or signer.ip_address
            signer.user_agent = context.user_agent or signer.user_agent
            signer.updated_at = context.now
            self.session.add(signer)
            self.audit_service.record_event(
                event_type="signer_viewed",
                actor_email=signer.email,
                request_id=request.id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details={"signer_id": str(signer.id)},
                commit=False,
                created_at=context.now,
            )
            self.session.commit()
        except WorkflowError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc
        return self._result(request, signer, SignerAction.VIEW, changed=True)

    def _apply_sign(
        self,
        request: SigningRequest,
        signers: list[Signer],
        signer: Signer,
        context: TransitionContext,
        method: SecondFactorMethod | None,
    ) -> TransitionResult:
        now = context.now
        signer.status = SignerStatus.SIGNED
        signer.signed_at = now
        signer.second_factor_method = method
        if method in (SecondFactorMethod.TOTP, SecondFactorMethod.BACKUP_CODE):
            signer.second_factor_verified_at = now
        signer.ip_address = context.ip_address or signer.ip_address
        signer.user_agent = context.user_agent or signer.user_agent
        signer.updated_at = now
        self.session.add(signer)

        if request.status == SigningRequestStatus.PENDING:
            request.status = SigningRequestStatus.IN_PROGRESS
        request.updated_at = now

        events: list[WorkflowEvent] = []
        if not self.registry.outstanding(signers):
            request.status = SigningRequestStatus.COMPLETED
            request.completed_at = now
            request.artifact_status = ArtifactStatus.PENDING
            events.append(
                WorkflowEvent(
                    event_type=NotificationType.REQUEST_COMPLETED,
                    request_id=request.id,
                    trigger="completed",
                    occurred_at=now,
                    signer_ids=tuple(item.id for item in signers),
                    actor_signer_id=signer.id,
                )
            )
        else:
            events.append(
                WorkflowEvent(
                    event_type=NotificationType.SIGNER_SIGNED,
                    request_id=request.id,
                    trigger=f"signed:{signer.id}",
                    occurred_at=now,
                    actor_signer_id=signer.id,
                )
            )
            if request.signing_mode == SigningMode.SEQUENTIAL:
                upcoming = self.registry.next_in_line(request, signers)
                if upcoming:
                    events.append(
                        WorkflowEvent(
                            event_type=NotificationType.SIGNATURE_REQUESTED,
                            request_id=request.id,
                            trigger="turn",
                            occurred_at=now,
                            signer_ids=tuple(item.id for item in upcoming),
                        )
                    )
        self.session.add(request)
        return self._result(request, signer, SignerAction.SIGN, changed=True, method=method, events=events)

    def _apply_decline(
        self,
        request: SigningRequest,
        signers: list[Signer],
        signer: Signer,
        context: TransitionContext,
    ) -> TransitionResult:
        now = context.now
        reason = (context.reason or "").strip() or None
        signer.status = SignerStatus.DECLINED
        signer.declined_at = now
        signer.decline_reason = reason
        signer.ip_address = context.ip_address or signer.ip_address
        signer.user_agent = context.user_agent or signer.user_agent
        signer.updated_at = now

        affected = self.cascade.on_terminal_signer_event(
            request, signers, signer.id, TerminalEventKind.DECLINE, now, reason=reason
        )
        self.session.add(request)
        for item in signers:
            self.session.add(item)

        event = WorkflowEvent(
            event_type=NotificationType.REQUEST_DECLINED,
            request_id=request.id,
            trigger=f"declined:{signer.id}",
            occurred_at=now,
            signer_ids=tuple(item.id for item in signers if item.id != signer.id),
            actor_signer_id=signer.id,
            extra={"reason": reason},
        )
        return self._result(
            request,
            signer,
            SignerAction.DECLINE,
            changed=True,
            affected=affected,
            events=[event],
        )

    @staticmethod
    def _result(
        request: SigningRequest,
        signer: Signer,
        action: SignerAction,
        *,
        changed: bool,
        method: SecondFactorMethod | None = None,
        affected: list[UUID] | None = None,
        events: list[WorkflowEvent] | None = None,
    ) -> TransitionResult:
        return TransitionResult(
            request_id=request.id,
            signer_id=signer.id,
            action=action.value,
            request_status=request.status,
            signer_status=signer.status,
            changed=changed,
            second_factor_method=method,
            affected_signer_ids=affected or [],
            events=events or [],
        )
