import smtplib
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlmodel import Session, select

from app.models.audit import AuditLog
from app.models.notification import NotificationLog, NotificationStatus, UserNotification
from app.models.workflow import SigningMode
from app.services.events import NotificationType, WorkflowEvent
from app.services.notification import (
    EmailConfig,
    EmailTransport,
    NotificationDispatcher,
    PermanentTransportError,
    SMSConfig,
    SmsTransport,
    TransportError,
    build_dedupe_key,
)
from tests.conftest import NOW, FakeTransport, make_request, make_user, signer_ids


class FakeSMTP:
    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent_messages = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        self.sent_messages.append(message)


class FakeTwilioClient:
    def __init__(self, *args, **kwargs):
        self.messages = self
        self.sent = []

    def create(self, **kwargs):
        self.sent.append(kwargs)
        return SimpleNamespace(sid=f"SM{len(self.sent)}")


@pytest.fixture()
def signed_request(db_session: Session):
    owner = make_user(db_session, "owner@example.com", full_name="Olivia Owner")
    request = make_request(db_session, owner, ["a@example.com", "b@example.com"], mode=SigningMode.PARALLEL)
    return owner, request


def _event(request, event_type=NotificationType.SIGNATURE_REQUESTED, trigger="sent", signer_ids_=()):
    return WorkflowEvent(
        event_type=event_type,
        request_id=request.id,
        trigger=trigger,
        occurred_at=NOW,
        signer_ids=tuple(signer_ids_),
    )


def test_dispatch_is_idempotent(db_session: Session, signed_request, fake_transport) -> None:
    _, request = signed_request
    dispatcher = NotificationDispatcher(db_session, transports={"email": fake_transport})
    event = _event(request, signer_ids_=signer_ids(db_session, request))

    first = dispatcher.dispatch(event)
    second = dispatcher.dispatch(event)

    assert len(first) == 2
    assert second == []
    assert sorted(fake_transport.recipients()) == ["a@example.com", "b@example.com"]
    logs = db_session.exec(select(NotificationLog)).all()
    assert len(logs) == 2
    assert all(log.status == NotificationStatus.SENT for log in logs)


def test_fan_out_for_decline_skips_decliner(db_session: Session, signed_request, fake_transport) -> None:
    owner, request = signed_request
    first, second = signer_ids(db_session, request)
    dispatcher = NotificationDispatcher(db_session, transports={"email": fake_transport})
    event = WorkflowEvent(
        event_type=NotificationType.REQUEST_DECLINED,
        request_id=request.id,
        trigger=f"declined:{first}",
        occurred_at=NOW,
        signer_ids=(second,),
        actor_signer_id=first,
    )

    dispatcher.dispatch(event)

    assert sorted(fake_transport.recipients()) == ["b@example.com", "owner@example.com"]
    inbox = db_session.exec(select(UserNotification).where(UserNotification.recipient_id == owner.id)).all()
    assert len(inbox) == 1
    assert inbox[0].event_type == "request_declined"


def test_expired_event_goes_to_owner_only(db_session: Session, signed_request, fake_transport) -> None:
    _, request = signed_request
    dispatcher = NotificationDispatcher(db_session, transports={"email": fake_transport})

    dispatcher.dispatch(_event(request, NotificationType.REQUEST_EXPIRED, trigger="expired:x"))

    assert fake_transport.recipients() == ["owner@example.com"]


def test_failed_attempts_back_off_and_exhaust(db_session: Session, signed_request) -> None:
    _, request = signed_request
    transport = FakeTransport(failures=10)
    dispatcher = NotificationDispatcher(db_session, transports={"email": transport}, max_retries=3)
    event = _event(request, NotificationType.SIGNER_SIGNED, trigger="signed:x")

    (attempt,) = dispatcher.dispatch(event)
    assert attempt.status == NotificationStatus.FAILED
    assert attempt.retry_count == 0
    assert attempt.next_attempt_at == NOW + timedelta(minutes=15)

    assert dispatcher.retry_failed(NOW + timedelta(minutes=10)) == []

    now = NOW
    for expected in (1, 2, 3):
        now = now + timedelta(days=1)
        (retry,) = dispatcher.retry_failed(now)
        assert retry.retry_count == expected

    assert retry.exhausted is True
    assert retry.next_attempt_at is None
    assert dispatcher.retry_failed(now + timedelta(days=7)) == []
    assert dispatcher.dispatch(event) == []

    failures = db_session.exec(select(AuditLog).where(AuditLog.event_type == "notification_dispatch_failed")).all()
    assert len(failures) == 1
    assert failures[0].details["retry_count"] == 3


def test_retry_succeeds_after_transient_failure(db_session: Session, signed_request) -> None:
    _, request = signed_request
    transport = FakeTransport(failures=1)
    dispatcher = NotificationDispatcher(db_session, transports={"email": transport})
    event = _event(request, NotificationType.SIGNER_SIGNED, trigger="signed:y")

    dispatcher.dispatch(event)
    (retry,) = dispatcher.retry_failed(NOW + timedelta(hours=1))

    assert retry.status == NotificationStatus.SENT
    assert retry.retry_count == 1
    assert dispatcher.retry_failed(NOW + timedelta(days=2)) == []
    assert dispatcher.dispatch(event) == []


def test_permanent_failure_exhausts_immediately(db_session: Session, signed_request) -> None:
    _, request = signed_request
    dispatcher = NotificationDispatcher(db_session, transports={"email": FakeTransport(permanent=True)})

    (attempt,) = dispatcher.dispatch(_event(request, NotificationType.SIGNER_SIGNED, trigger="signed:z"))

    assert attempt.exhausted is True
    assert dispatcher.retry_failed(NOW + timedelta(days=1)) == []


def test_delivery_callbacks_append_rows(db_session: Session, signed_request, fake_transport) -> None:
    _, request = signed_request
    dispatcher = NotificationDispatcher(db_session, transports={"email": fake_transport})
    (attempt,) = dispatcher.dispatch(_event(request, NotificationType.SIGNER_SIGNED, trigger="signed:w"))

    delivered = dispatcher.mark_delivered(attempt.provider_message_id, NOW + timedelta(minutes=1))

    assert delivered.status == NotificationStatus.DELIVERED
    assert delivered.dedupe_key == attempt.dedupe_key
    assert len(dispatcher.list_for_request(request.id)) == 2


def test_missing_transport_is_recorded_not_raised(db_session: Session, signed_request) -> None:
    _, request = signed_request
    dispatcher = NotificationDispatcher(db_session, transports={})

    (attempt,) = dispatcher.dispatch(_event(request, NotificationType.SIGNER_SIGNED, trigger="signed:v"))

    assert attempt.status == NotificationStatus.FAILED
    assert "No transport" in attempt.error_message


def test_unexpected_transport_error_is_recorded_for_retry(db_session: Session, signed_request) -> None:
    _, request = signed_request

    class UnreachableTransport:
        def send(self, recipient, template_id, payload):
            raise ConnectionError("network unreachable")

    dispatcher = NotificationDispatcher(db_session, transports={"email": UnreachableTransport()})

    (attempt,) = dispatcher.dispatch(_event(request, NotificationType.REQUEST_EXPIRED, trigger="expired:u"))

    assert attempt.status == NotificationStatus.FAILED
    assert attempt.exhausted is False
    assert attempt.error_message == "network unreachable"
    assert attempt.next_attempt_at == NOW + timedelta(minutes=15)


def test_dispatch_waits_for_the_scheduled_retry(db_session: Session, signed_request) -> None:
    _, request = signed_request
    transport = FakeTransport(failures=1)
    dispatcher = NotificationDispatcher(db_session, transports={"email": transport})
    event = _event(request, NotificationType.REQUEST_EXPIRED, trigger="expired:t")

    dispatcher.dispatch(event)
    assert dispatcher.dispatch(event, NOW + timedelta(minutes=5)) == []
    assert transport.calls == 1

    (again,) = dispatcher.dispatch(event, NOW + timedelta(minutes=15))
    assert again.status == NotificationStatus.SENT
    assert again.retry_count == 1


def test_racing_dispatchers_send_once(db_engine, db_session: Session, signed_request) -> None:
    _, request = signed_request
    event = _event(request, NotificationType.REQUEST_EXPIRED, trigger="expired:r")
    rival_results = []

    class InterleavingTransport(FakeTransport):
        def send(self, recipient, template_id, payload):
            if not rival_results:
                # another worker read the log before this attempt was claimed
                with Session(db_engine) as other_session:
                    rival = NotificationDispatcher(other_session, transports={"email": self})
                    rival._latest_attempt = lambda dedupe_key: None
                    rival_results.append(rival.dispatch(event))
            return super().send(recipient, template_id, payload)

    transport = InterleavingTransport()
    dispatcher = NotificationDispatcher(db_session, transports={"email": transport})

    (attempt,) = dispatcher.dispatch(event)

    assert rival_results == [[]]
    assert transport.recipients() == ["owner@example.com"]
    assert attempt.status == NotificationStatus.SENT
    rows = db_session.exec(select(NotificationLog).where(NotificationLog.dedupe_key == attempt.dedupe_key)).all()
    assert len(rows) == 1


def test_dedupe_key_shape(signed_request) -> None:
    _, request = signed_request
    key = build_dedupe_key(request.id, "A@Example.com", "reminder", "reminder:1")
    assert key == f"{request.id}:a@example.com:reminder:reminder:1"


def test_email_transport_renders_and_sends(monkeypatch) -> None:
    fake = FakeSMTP("smtp.example.com", 587, timeout=10)
    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: fake)

    transport = EmailTransport(
        email_config=EmailConfig(
            host="smtp.example.com",
            port=587,
            username="user",
            password="secret",
            sender="SignFlow <noreply@example.com>",
            starttls=True,
        )
    )
    message_id = transport.send(
        "signer@example.com",
        "signature_requested",
        {
            "request_title": "Supply contract",
            "recipient_name": "Sam Signer",
            "action_link": "http://example.com/sign/1/2",
            "expires_at_display": "2026-04-01 12:00 UTC",
        },
    )

    assert message_id
    assert fake.started_tls is True
    assert fake.logged_in == ("user", "secret")
    message = fake.sent_messages[0]
    assert message["Subject"] == "Signature requested: Supply contract"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "http://example.com/sign/1/2" in html
    assert "Sam Signer" in html


def test_email_transport_refused_recipient_is_permanent(monkeypatch) -> None:
    class RefusingSMTP(FakeSMTP):
        def send_message(self, message):
            raise smtplib.SMTPRecipientsRefused({"bad@example.com": (550, b"no such user")})

    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: RefusingSMTP(host, port))
    transport = EmailTransport(
        email_config=EmailConfig("smtp.example.com", 25, None, None, "noreply@example.com", False)
    )

    with pytest.raises(PermanentTransportError):
        transport.send("bad@example.com", "reminder", {"request_title": "NDA"})


def test_email_transport_without_config_is_transient() -> None:
    with pytest.raises(TransportError):
        EmailTransport().send("a@example.com", "reminder", {"request_title": "NDA"})


def test_sms_transport_uses_messaging_service() -> None:
    client = FakeTwilioClient()
    transport = SmsTransport(
        SMSConfig(account_sid="AC1", auth_token="token", from_number=None, messaging_service_sid="MG1"),
        client=client,
    )

    sid = transport.send("+15550001111", "reminder", {"request_title": "NDA", "action_link": "http://x/sign"})

    assert sid == "SM1"
    assert client.sent[0]["messaging_service_sid"] == "MG1"
    assert "Reminder: NDA" in client.sent[0]["body"]
    assert "http://x/sign" in client.sent[0]["body"]
