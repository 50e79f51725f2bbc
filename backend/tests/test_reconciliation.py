import asyncio
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from app.core.errors import PersistenceFailure
from app.models.notification import NotificationLog, NotificationStatus
from app.models.workflow import SigningMode, SigningRequest, SigningRequestStatus
from app.services import reconciliation as reconciliation_module
from app.services.artifact import CompletionArtifactService
from app.services.notification import NotificationDispatcher
from app.services.reconciliation import ReconciliationScheduler
from app.services.storage import LocalStorage
from app.services.workflow import TransitionContext, WorkflowStateMachine
from tests.conftest import NOW, make_request, make_user, signer_ids


class StaticGenerator:
    def generate(self, request, signers, events) -> bytes:
        return b"%PDF-1.4 test"


@pytest.fixture()
def owner(db_session: Session):
    return make_user(db_session, "owner@example.com")


@pytest.fixture()
def scheduler(db_session: Session, transports, tmp_path) -> ReconciliationScheduler:
    return ReconciliationScheduler(
        db_session,
        dispatcher=NotificationDispatcher(db_session, transports=transports),
        artifacts=CompletionArtifactService(db_session, generator=StaticGenerator(), storage=LocalStorage(tmp_path)),
    )


def test_reminders_follow_the_interval(db_session: Session, owner, scheduler, fake_transport) -> None:
    request = make_request(db_session, owner, ["a@example.com", "b@example.com"])

    assert scheduler.sweep_reminders(NOW).processed == 0

    first = scheduler.sweep_reminders(NOW + timedelta(hours=24))
    assert first.processed == 1
    assert first.sent == 2
    assert sorted(fake_transport.recipients("reminder")) == ["a@example.com", "b@example.com"]

    assert scheduler.sweep_reminders(NOW + timedelta(hours=25)).processed == 0

    second = scheduler.sweep_reminders(NOW + timedelta(hours=48))
    assert second.sent == 2

    db_session.refresh(request)
    assert request.reminder_count == 2
    assert request.last_reminder_sent_at == NOW + timedelta(hours=48)
    assert len(fake_transport.recipients("reminder")) == 4


def test_reminders_skip_signed_signers(db_session: Session, owner, scheduler, fake_transport) -> None:
    request = make_request(db_session, owner, ["a@example.com", "b@example.com"], mode=SigningMode.PARALLEL)
    first, _ = signer_ids(db_session, request)
    WorkflowStateMachine(db_session).submit_action(request.id, first, "sign", TransitionContext(now=NOW))

    scheduler.sweep_reminders(NOW + timedelta(hours=24))

    assert fake_transport.recipients("reminder") == ["b@example.com"]


def test_expiry_warning_is_sent_once(db_session: Session, owner, scheduler, fake_transport) -> None:
    make_request(db_session, owner, ["a@example.com"], expires_at=NOW + timedelta(hours=12))

    first = scheduler.sweep_expiry_warnings(NOW)
    second = scheduler.sweep_expiry_warnings(NOW + timedelta(hours=1))

    assert first.processed == 1
    assert first.sent == 2
    assert second.sent == 0
    assert sorted(fake_transport.recipients("expiry_warning")) == ["a@example.com", "owner@example.com"]


def test_expiry_warning_ignores_distant_deadlines(db_session: Session, owner, scheduler) -> None:
    make_request(db_session, owner, ["a@example.com"], expires_at=NOW + timedelta(days=5))

    assert scheduler.sweep_expiry_warnings(NOW).processed == 0


def test_forced_expiry_converges(db_session: Session, owner, scheduler, fake_transport) -> None:
    request = make_request(db_session, owner, ["a@example.com", "b@example.com"], expires_at=NOW + timedelta(hours=1))

    first = scheduler.run(NOW + timedelta(hours=2))
    second = scheduler.run(NOW + timedelta(hours=3))

    assert first.expirations.processed == 1
    assert second.expirations.processed == 0
    assert first.reminders.processed == 0
    assert fake_transport.recipients("request_expired") == ["owner@example.com"]
    db_session.refresh(request)
    assert request.status == SigningRequestStatus.EXPIRED
    assert request.expired_at == NOW + timedelta(hours=2)


def test_sweep_records_errors_and_keeps_going(db_session: Session, owner, scheduler, monkeypatch) -> None:
    broken = make_request(db_session, owner, ["a@example.com"], expires_at=NOW)
    healthy = make_request(db_session, owner, ["b@example.com"], expires_at=NOW, created_at=NOW - timedelta(minutes=30))
    original = scheduler.state_machine.expire_request

    def flaky_expire(request_id, now):
        if request_id == broken.id:
            raise PersistenceFailure("database went away")
        return original(request_id, now)

    monkeypatch.setattr(scheduler.state_machine, "expire_request", flaky_expire)

    report = scheduler.sweep_expirations(NOW + timedelta(minutes=1))

    assert report.processed == 1
    assert [error.request_id for error in report.errors] == [str(broken.id)]
    assert db_session.get(SigningRequest, healthy.id).status == SigningRequestStatus.EXPIRED
    assert db_session.get(SigningRequest, broken.id).status == SigningRequestStatus.PENDING


def test_transport_crash_does_not_abort_the_sweep(db_session: Session, owner, tmp_path) -> None:
    class UnreachableTransport:
        def send(self, recipient, template_id, payload):
            raise ConnectionError("network unreachable")

    first = make_request(db_session, owner, ["a@example.com"], expires_at=NOW)
    second = make_request(db_session, owner, ["b@example.com"], expires_at=NOW, created_at=NOW - timedelta(minutes=30))
    scheduler = ReconciliationScheduler(
        db_session,
        dispatcher=NotificationDispatcher(db_session, transports={"email": UnreachableTransport()}),
        artifacts=CompletionArtifactService(db_session, generator=StaticGenerator(), storage=LocalStorage(tmp_path)),
    )

    report = scheduler.sweep_expirations(NOW + timedelta(minutes=1))

    assert report.processed == 2
    assert report.errors == []
    for request in (first, second):
        assert db_session.get(SigningRequest, request.id).status == SigningRequestStatus.EXPIRED
    failed = db_session.exec(select(NotificationLog).where(NotificationLog.notification_type == "request_expired")).all()
    assert len(failed) == 2
    assert all(row.status == NotificationStatus.FAILED and row.next_attempt_at for row in failed)


def test_scheduler_loop_survives_a_failed_pass(monkeypatch) -> None:
    passes = []

    def failing_pass():
        passes.append(1)
        raise RuntimeError("renderer crashed")

    async def stop(_seconds):
        raise asyncio.CancelledError

    monkeypatch.setattr(reconciliation_module, "run_reconciliation_once", failing_pass)
    monkeypatch.setattr(reconciliation_module.asyncio, "sleep", stop)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(reconciliation_module.run_scheduler_loop(1))
    assert passes == [1]


def test_notification_retries_run_in_the_sweep(db_session: Session, owner, scheduler, fake_transport) -> None:
    make_request(db_session, owner, ["a@example.com"], expires_at=NOW + timedelta(hours=12))
    fake_transport.failures = 2

    warned = scheduler.sweep_expiry_warnings(NOW)
    assert warned.sent == 0

    retried = scheduler.sweep_notification_retries(NOW + timedelta(minutes=15))
    assert retried.processed == 2
    assert retried.sent == 2
