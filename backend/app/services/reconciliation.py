from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, update
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import WorkflowError
from app.core.logging_setup import get_logger
from app.db import session as db_session_module
from app.models.base import utcnow
from app.models.notification import NotificationLog, NotificationStatus
from app.models.workflow import ArtifactStatus, OPEN_REQUEST_STATUSES, SigningRequest
from app.services.artifact import CompletionArtifactService
from app.services.events import NotificationType, WorkflowEvent
from app.services.notification import NotificationDispatcher
from app.services.signer_registry import SignerRegistry
from app.services.workflow import WorkflowStateMachine

logger = get_logger("reconciliation")


@dataclass
class SweepError:
    request_id: str
    error: str


@dataclass
class SweepReport:
    processed: int = 0
    sent: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def count_sent(self, attempts: list[NotificationLog]) -> None:
        self.sent += sum(1 for item in attempts if item.status == NotificationStatus.SENT)


@dataclass
class ReconciliationReport:
    ran_at: datetime
    reminders: SweepReport = field(default_factory=SweepReport)
    expiry_warnings: SweepReport = field(default_factory=SweepReport)
    expirations: SweepReport = field(default_factory=SweepReport)
    notification_retries: SweepReport = field(default_factory=SweepReport)
    artifact_retries: SweepReport = field(default_factory=SweepReport)


class ReconciliationScheduler:
    """Periodic sweeps driven by the passage of time.

    Each request is handled in its own transaction; a failure is recorded in the
    sweep report and the sweep moves on. Every sweep is safe to re-run: the
    conditional updates and the dispatcher's dedupe keys keep a second pass
    from repeating work.
    """

    def __init__(
        self,
        session: Session,
        *,
        state_machine: WorkflowStateMachine | None = None,
        dispatcher: NotificationDispatcher | None = None,
        artifacts: CompletionArtifactService | None = None,
    ) -> None:
        self.session = session
        self.state_machine = state_machine or WorkflowStateMachine(session)
        self.dispatcher = dispatcher or NotificationDispatcher(session)
        self.artifacts = artifacts or CompletionArtifactService(session)
        self.registry = SignerRegistry(session)
        self.reminder_interval = timedelta(hours=settings.reminder_interval_hours)
        self.warning_window = timedelta(hours=settings.expiry_warning_hours)

    def run(self, now: datetime | None = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport(ran_at=now)
        # Expire first so past-due requests get neither reminders nor warnings.
        report.expirations = self.sweep_expirations(now)
        report.expiry_warnings = self.sweep_expiry_warnings(now)
        report.reminders = self.sweep_reminders(now)
        report.notification_retries = self.sweep_notification_retries(now)
        report.artifact_retries = self.sweep_artifact_retries(now)
        logger.info(
            "Reconciliation at %s: %d expired, %d warned, %d reminded, %d retried, %d artifacts",
            now.isoformat(),
            report.expirations.processed,
            report.expiry_warnings.processed,
            report.reminders.processed,
            report.notification_retries.processed,
            report.artifact_retries.processed,
        )
        return report

    def _fail(self, report: SweepReport, request_id: UUID, exc: Exception) -> None:
        self.session.rollback()
        if isinstance(exc, WorkflowError):
            logger.warning("Sweep failed for request %s: %s", request_id, exc)
        else:
            logger.exception("Sweep failed for request %s", request_id)
        report.errors.append(SweepError(request_id=str(request_id), error=str(exc)))

    def _open_requests(self, *conditions) -> list[UUID]:
        statement = select(SigningRequest.id).where(SigningRequest.status.in_(list(OPEN_REQUEST_STATUSES)))
        for condition in conditions:
            statement = statement.where(condition)
        return list(self.session.exec(statement.order_by(SigningRequest.created_at)).all())

    # Sweeps ----------------------------------------------------------------
    def sweep_reminders(self, now: datetime) -> SweepReport:
        report = SweepReport()
        cutoff = now - self.reminder_interval
        candidates = self._open_requests(
            SigningRequest.created_at <= cutoff,
            or_(SigningRequest.last_reminder_sent_at.is_(None), SigningRequest.last_reminder_sent_at <= cutoff),
            or_(SigningRequest.expires_at.is_(None), SigningRequest.expires_at > now),
        )
        for request_id in candidates:
            try:
                outcome = self.session.execute(
                    update(SigningRequest)
                    .where(SigningRequest.id == request_id)
                    .where(SigningRequest.status.in_(list(OPEN_REQUEST_STATUSES)))
                    .where(
                        or_(
                            SigningRequest.last_reminder_sent_at.is_(None),
                            SigningRequest.last_reminder_sent_at <= cutoff,
                        )
                    )
                    .values(
                        last_reminder_sent_at=now,
                        reminder_count=SigningRequest.reminder_count + 1,
                    ),
                    execution_options={"synchronize_session": False},
                )
                self.session.commit()
                if outcome.rowcount != 1:
                    continue
                request = self.session.get(SigningRequest, request_id, populate_existing=True)
                targets = self.registry.outstanding(self.registry.list_signers(request_id))
                report.processed += 1
                if not targets:
                    continue
                event = WorkflowEvent(
                    event_type=NotificationType.REMINDER,
                    request_id=request_id,
                    trigger=f"reminder:{request.reminder_count}",
                    occurred_at=now,
                    signer_ids=tuple(signer.id for signer in targets),
                )
                report.count_sent(self.dispatcher.dispatch(event, now))
            except Exception as exc:
                self._fail(report, request_id, exc)
        return report

    def sweep_expiry_warnings(self, now: datetime) -> SweepReport:
        report = SweepReport()
        candidates = self._open_requests(
            SigningRequest.expires_at.is_not(None),
            SigningRequest.expires_at > now,
            SigningRequest.expires_at <= now + self.warning_window,
        )
        for request_id in candidates:
            try:
                request = self.registry.get_request(request_id)
                targets = self.registry.outstanding(self.registry.list_signers(request_id))
                event = WorkflowEvent(
                    event_type=NotificationType.EXPIRY_WARNING,
                    request_id=request_id,
                    trigger=f"expiry_warning:{request.expires_at.isoformat()}",
                    occurred_at=now,
                    signer_ids=tuple(signer.id for signer in targets),
                )
                report.processed += 1
                report.count_sent(self.dispatcher.dispatch(event, now))
            except Exception as exc:
                self._fail(report, request_id, exc)
        return report

    def sweep_expirations(self, now: datetime) -> SweepReport:
        report = SweepReport()
        candidates = self._open_requests(
            SigningRequest.expires_at.is_not(None),
            SigningRequest.expires_at <= now,
        )
        for request_id in candidates:
            try:
                result = self.state_machine.expire_request(request_id, now)
                if result is None:
                    continue
                report.processed += 1
                for event in result.events:
                    report.count_sent(self.dispatcher.dispatch(event, now))
            except Exception as exc:
                self._fail(report, request_id, exc)
        return report

    def sweep_notification_retries(self, now: datetime) -> SweepReport:
        report = SweepReport()
        try:
            attempts = self.dispatcher.retry_failed(now)
        except Exception as exc:
            self.session.rollback()
            logger.exception("Notification retry sweep failed")
            report.errors.append(SweepError(request_id="", error=str(exc)))
            return report
        report.processed = len(attempts)
        report.count_sent(attempts)
        return report

    def sweep_artifact_retries(self, now: datetime) -> SweepReport:
        report = SweepReport()
        for request_id in self.artifacts.due_retries(now):
            try:
                request = self.artifacts.generate(request_id, now)
            except Exception as exc:
                self._fail(report, request_id, exc)
                continue
            if request is None:
                continue
            report.processed += 1
            if request.artifact_status == ArtifactStatus.GENERATED:
                report.sent += 1
            else:
                report.errors.append(SweepError(request_id=str(request_id), error="artifact generation failed"))
        return report


def run_reconciliation_once(now: datetime | None = None) -> ReconciliationReport:
    with Session(db_session_module.engine) as session:
        return ReconciliationScheduler(session).run(now)


async def run_scheduler_loop(interval_seconds: int | None = None) -> None:
    """Run reconciliation passes forever; started from the application lifespan."""
    interval = max(int(interval_seconds or settings.scheduler_interval_seconds), 1)
    logger.info("Reconciliation timer started (every %ss)", interval)
    while True:
        try:
            await asyncio.to_thread(run_reconciliation_once)
        except Exception:
            logger.exception("Reconciliation pass failed")
        await asyncio.sleep(interval)
