from __future__ import annotations

from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlmodel import Session

from app.core.logging_setup import get_logger
from app.db import session as db_session_module
from app.models.base import utcnow
from app.models.second_factor import ExemptionType, SecondFactorExemption
from app.models.workflow import SigningRequestStatus
from app.services.artifact import ArtifactGenerator, CompletionArtifactService
from app.services.audit import AuditService
from app.services.cascade import CascadeResolver
from app.services.events import WorkflowEvent
from app.services.notification import MessageTransport, NotificationDispatcher
from app.services.reconciliation import ReconciliationReport, ReconciliationScheduler
from app.services.second_factor import SecondFactorGate
from app.services.signer_registry import SignerRegistry
from app.services.storage import StorageBackend
from app.services.workflow import SignerAction, TransitionContext, TransitionResult, WorkflowStateMachine

logger = get_logger("engine")


class SigningEngine:
    """Entry point wiring the workflow components around one session."""

    def __init__(
        self,
        session: Session,
        *,
        transports: dict[str, MessageTransport] | None = None,
        generator: ArtifactGenerator | None = None,
        storage: StorageBackend | None = None,
    ) -> None:
        self.session = session
        self.audit_service = AuditService(session)
        self.registry = SignerRegistry(session)
        self.gate = SecondFactorGate(session, self.audit_service)
        self.cascade = CascadeResolver()
        self.state_machine = WorkflowStateMachine(
            session,
            registry=self.registry,
            gate=self.gate,
            cascade=self.cascade,
            audit_service=self.audit_service,
        )
        self.dispatcher = NotificationDispatcher(session, transports=transports, audit_service=self.audit_service)
        self.artifacts = CompletionArtifactService(
            session,
            generator=generator,
            storage=storage,
            audit_service=self.audit_service,
        )
        self.scheduler = ReconciliationScheduler(
            session,
            state_machine=self.state_machine,
            dispatcher=self.dispatcher,
            artifacts=self.artifacts,
        )

    def submit_action(
        self,
        request_id: UUID | str,
        signer_id: UUID | str,
        action: SignerAction | str,
        code: str | None = None,
        *,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
        deliver: bool = True,
    ) -> TransitionResult:
        context = TransitionContext(
            now=now or utcnow(),
            code=code,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        result = self.state_machine.submit_action(request_id, signer_id, action, context)
        if deliver:
            self.after_commit(result, context.now)
        return result

    def send_request(self, request_id: UUID | str, now: datetime | None = None, *, deliver: bool = True) -> TransitionResult:
        now = now or utcnow()
        result = self.state_machine.send_request(request_id, now)
        if deliver:
            self.after_commit(result, now)
        return result

    def after_commit(self, result: TransitionResult, now: datetime) -> None:
        """Deliver the events of a committed transition and start the artifact of a completed request."""
        self.dispatch_events(result.events, now)
        if result.changed and result.request_status == SigningRequestStatus.COMPLETED:
            self.artifacts.generate(result.request_id, now)

    def dispatch_events(self, events: Iterable[WorkflowEvent], now: datetime | None = None) -> None:
        for event in events:
            self.dispatcher.dispatch(event, now)

    def run_reconciliation_sweep(self, now: datetime | None = None) -> ReconciliationReport:
        return self.scheduler.run(now)

    def grant_exemption(
        self,
        user_id: UUID,
        organization_id: UUID | None,
        scope: ExemptionType | str,
        expires_at: datetime,
        granted_by: UUID,
        reason: str,
        now: datetime | None = None,
    ) -> SecondFactorExemption:
        return self.gate.grant_exemption(
            user_id=user_id,
            organization_id=organization_id,
            scope=ExemptionType(scope),
            expires_at=expires_at,
            granted_by=granted_by,
            reason=reason,
            now=now,
        )

    def revoke_exemption(
        self,
        exemption_id: UUID,
        revoked_by: UUID,
        reason: str,
        now: datetime | None = None,
    ) -> SecondFactorExemption:
        return self.gate.revoke_exemption(exemption_id=exemption_id, revoked_by=revoked_by, reason=reason, now=now)


def deliver_in_background(result: TransitionResult, now: datetime) -> None:
    """Post-commit work for the HTTP layer, run on a fresh session after the response."""
    with Session(db_session_module.engine) as session:
        SigningEngine(session).after_commit(result, now)
