from __future__ import annotations

import smtplib
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from pathlib import Path
from typing import Any, Protocol
from uuid import UUID

import httpx
from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlmodel import Session, or_, select
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from app.core.config import settings as app_settings
from app.core.errors import InvalidRequest
from app.core.logging_setup import get_logger
from app.models.notification import (
    NotificationLog,
    NotificationStatus,
    SETTLED_NOTIFICATION_STATUSES,
    UserNotification,
)
from app.models.user import User
from app.models.workflow import Signer, SigningRequest
from app.services.audit import AuditService
from app.services.events import NotificationType, WorkflowEvent

logger = get_logger("notification")

TEMPLATE_ROOT = Path(__file__).resolve().parent.parent / "templates"

SUBJECTS: dict[str, str] = {
    NotificationType.SIGNATURE_REQUESTED.value: "Signature requested: {title}",
    NotificationType.SIGNER_SIGNED.value: "{actor} signed {title}",
    NotificationType.REQUEST_COMPLETED.value: "Completed: {title}",
    NotificationType.REQUEST_DECLINED.value: "Declined: {title}",
    NotificationType.REMINDER.value: "Reminder: {title} is waiting for your signature",
    NotificationType.EXPIRY_WARNING.value: "{title} expires soon",
    NotificationType.REQUEST_EXPIRED.value: "Expired: {title}",
}


class TransportError(Exception):
    """Delivery attempt failed; the message may be retried."""


class PermanentTransportError(TransportError):
    """Delivery can never succeed for this recipient (bad address, rejected content)."""


class MessageTransport(Protocol):
    def send(self, recipient: str, template_id: str, payload: dict[str, Any]) -> str | None:
        """Deliver one message and return the provider's delivery id."""
        ...


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool


@dataclass
class SendGridConfig:
    api_key: str
    sender: str | None


@dataclass
class SMSConfig:
    account_sid: str
    auth_token: str
    from_number: str | None
    messaging_service_sid: str | None


def build_template_environment(template_root: Path | None = None) -> Environment:
    return Environment(
        loader=FileSystemLoader(template_root or TEMPLATE_ROOT),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_subject(template_id: str, payload: dict[str, Any]) -> str:
    pattern = SUBJECTS.get(template_id, "{title}")
    return pattern.format(
        title=payload.get("request_title") or "Signing request",
        actor=payload.get("actor_name") or payload.get("actor_email") or "A signer",
    )


def render_plain_text(template_id: str, payload: dict[str, Any]) -> str:
    lines = [f"Hello {payload.get('recipient_name') or payload.get('recipient')},", ""]
    lines.append(render_subject(template_id, payload) + ".")
    if payload.get("reason"):
        lines.append(f"Reason: {payload['reason']}")
    if payload.get("expires_at_display"):
        lines.append(f"Deadline: {payload['expires_at_display']}")
    if payload.get("action_link"):
        lines.extend(["", "Open the request:", payload["action_link"]])
    lines.extend(["", "The SignFlow team"])
    return "\n".join(lines)


class EmailTransport:
    """E-mail through SMTP or the SendGrid HTTP API, rendered from jinja2 templates."""

    def __init__(
        self,
        email_config: EmailConfig | None = None,
        sendgrid_config: SendGridConfig | None = None,
        email_backend: str = "smtp",
        template_root: Path | None = None,
    ) -> None:
        self.email_config = email_config
        self.sendgrid_config = sendgrid_config
        normalized_backend = (email_backend or "smtp").strip().lower()
        self.email_backend = normalized_backend if normalized_backend in {"smtp", "sendgrid"} else "smtp"
        if self.sendgrid_config and not self.email_config:
            self.email_backend = "sendgrid"
        self.template_env = build_template_environment(template_root)

    @classmethod
    def from_settings(cls, settings) -> EmailTransport | None:
        sender = settings.smtp_sender
        email_config = None
        sendgrid_config = None
        if settings.smtp_host and sender:
            email_config = EmailConfig(
                host=settings.smtp_host,
                port=int(settings.smtp_port),
                username=settings.smtp_username,
                password=settings.smtp_password,
                sender=sender,
                starttls=bool(settings.smtp_starttls),
            )
        if settings.sendgrid_api_key and sender:
            sendgrid_config = SendGridConfig(api_key=settings.sendgrid_api_key, sender=sender)
        if not email_config and not sendgrid_config:
            return None
        return cls(email_config=email_config, sendgrid_config=sendgrid_config, email_backend=settings.email_backend)

    def render(self, template_id: str, payload: dict[str, Any]) -> str:
        try:
            template = self.template_env.get_template(f"email/{template_id}.html")
        except TemplateNotFound as exc:
            raise PermanentTransportError(f"No e-mail template for {template_id}") from exc
        return template.render(subject=render_subject(template_id, payload), **payload)

    def send(self, recipient: str, template_id: str, payload: dict[str, Any]) -> str | None:
        subject = render_subject(template_id, payload)
        html_body = self.render(template_id, payload)
        text_body = render_plain_text(template_id, payload)
        if self.email_backend == "sendgrid":
            return self._send_via_sendgrid(to=recipient, subject=subject, html_body=html_body, text_body=text_body)
        return self._send_via_smtp(to=recipient, subject=subject, html_body=html_body, text_body=text_body)

    def _send_via_smtp(self, *, to: str, subject: str, html_body: str, text_body: str) -> str:
        if not self.email_config:
            raise TransportError("Email sender not configured")

        message = EmailMessage()
        message_id = make_msgid(domain="signflow")
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to
        message["Message-ID"] = message_id
        message.set_content(text_body, subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        try:
            with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=30) as smtp:
                if self.email_config.starttls:
                    smtp.starttls()
                if self.email_config.username and self.email_config.password:
                    smtp.login(self.email_config.username, self.email_config.password)
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentTransportError(f"Recipient refused: {to}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        return message_id.strip("<>")

    def _send_via_sendgrid(self, *, to: str, subject: str, html_body: str, text_body: str) -> str | None:
        if not self.sendgrid_config:
            raise TransportError("SendGrid sender not configured")

        sender = self.sendgrid_config.sender or (self.email_config.sender if self.email_config else None)
        name, email = parseaddr(sender or "")
        if not email:
            raise PermanentTransportError("SendGrid sender address missing")

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }
        if name:
            payload["from"]["name"] = name

        headers = {
            "Authorization": f"Bearer {self.sendgrid_config.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = httpx.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers=headers,
                json=payload,
                timeout=30,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if 400 <= status < 500 and status != 429:
                raise PermanentTransportError(f"SendGrid rejected the message ({status})") from exc
            raise TransportError(f"SendGrid error ({status})") from exc
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        return response.headers.get("X-Message-Id")


class SmsTransport:
    def __init__(self, config: SMSConfig, client: Client | None = None) -> None:
        self.config = config
        self.client = client

    @classmethod
    def from_settings(cls, settings) -> SmsTransport | None:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            return None
        if not settings.twilio_from_number and not settings.twilio_messaging_service_sid:
            return None
        return cls(
            SMSConfig(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                messaging_service_sid=settings.twilio_messaging_service_sid,
            )
        )

    def _client(self) -> Client:
        if self.client is None:
            self.client = Client(self.config.account_sid, self.config.auth_token)
        return self.client

    @staticmethod
    def body(template_id: str, payload: dict[str, Any]) -> str:
        parts = [render_subject(template_id, payload) + "."]
        if payload.get("expires_at_display"):
            parts.append(f"Deadline: {payload['expires_at_display']}.")
        if payload.get("action_link"):
            parts.append(f"Open: {payload['action_link']}")
        return " ".join(parts)

    def send(self, recipient: str, template_id: str, payload: dict[str, Any]) -> str | None:
        message_kwargs: dict[str, Any] = {"to": recipient, "body": self.body(template_id, payload)}
        if self.config.messaging_service_sid:
            message_kwargs["messaging_service_sid"] = self.config.messaging_service_sid
        elif self.config.from_number:
            message_kwargs["from_"] = self.config.from_number
        else:
            raise TransportError("SMS sender not configured")
        try:
            message = self._client().messages.create(**message_kwargs)
        except TwilioRestException as exc:
            if exc.status and 400 <= exc.status < 500 and exc.status != 429:
                raise PermanentTransportError(exc.msg or str(exc)) from exc
            raise TransportError(exc.msg or str(exc)) from exc
        except TwilioException as exc:
            raise TransportError(str(exc)) from exc
        return getattr(message, "sid", None)


def build_transports(settings=None) -> dict[str, MessageTransport]:
    settings = settings or app_settings
    transports: dict[str, MessageTransport] = {}
    email = EmailTransport.from_settings(settings)
    if email:
        transports["email"] = email
    sms = SmsTransport.from_settings(settings)
    if sms:
        transports["sms"] = sms
    return transports


@dataclass
class Recipient:
    address: str
    channel: str
    name: str
    user_id: UUID | None = None
    signer_id: UUID | None = None
    is_owner: bool = False


# Which parties hear about an event: (owner, signers) where signers is
# "event" (ids carried by the event), "all" or "none".
FAN_OUT: dict[NotificationType, tuple[bool, str]] = {
    NotificationType.SIGNATURE_REQUESTED: (False, "event"),
    NotificationType.SIGNER_SIGNED: (True, "none"),
    NotificationType.REQUEST_COMPLETED: (True, "all"),
    NotificationType.REQUEST_DECLINED: (True, "event"),
    NotificationType.REMINDER: (False, "event"),
    NotificationType.EXPIRY_WARNING: (True, "event"),
    NotificationType.REQUEST_EXPIRED: (True, "none"),
}


def compute_backoff_delay(attempt: int) -> timedelta:
    """Stepped backoff between delivery retries.

    attempt is 1-based: 1 -> 15 minutes, 2 -> 1 hour, 3 -> 6 hours, 4+ -> 24 hours.
    """
    if attempt <= 1:
        return timedelta(minutes=15)
    if attempt == 2:
        return timedelta(hours=1)
    if attempt == 3:
        return timedelta(hours=6)
    return timedelta(hours=24)


def build_dedupe_key(request_id: UUID, recipient: str, notification_type: str, trigger: str) -> str:
    return f"{request_id}:{recipient.lower()}:{notification_type}:{trigger}"


class NotificationDispatcher:
    """Idempotent fan-out of workflow events to e-mail, SMS and in-app messages.

    Every attempt appends a ``NotificationLog`` row. A dedupe key whose latest
    row is ``sent``, ``delivered`` or ``bounced`` is never dispatched again;
    ``failed`` rows are picked up by :meth:`retry_failed` until the retry budget
    is spent.
    """

    def __init__(
        self,
        session: Session,
        transports: dict[str, MessageTransport] | None = None,
        audit_service: AuditService | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.session = session
        self.transports = build_transports() if transports is None else transports
        self.audit_service = audit_service or AuditService(session)
        self.max_retries = app_settings.notification_max_retries if max_retries is None else max_retries

    # Fan-out ---------------------------------------------------------------
    def dispatch(self, event: WorkflowEvent, now: datetime | None = None) -> list[NotificationLog]:
        """Send every message an event calls for. Failures are recorded, never raised."""
        now = now or event.occurred_at
        request = self.session.get(SigningRequest, event.request_id)
        if not request:
            logger.warning("Dropping %s event for unknown request %s", event.event_type.value, event.request_id)
            return []

        attempts: list[NotificationLog] = []
        for recipient in self.resolve_recipients(request, event):
            dedupe_key = build_dedupe_key(request.id, recipient.address, event.event_type.value, event.trigger)
            try:
                self._store_in_app(request, recipient, event, dedupe_key, now)
                latest = self._latest_attempt(dedupe_key)
                if latest and (latest.status in SETTLED_NOTIFICATION_STATUSES or latest.exhausted):
                    logger.debug("Skipping %s, already handled", dedupe_key)
                    continue
                if latest and latest.next_attempt_at and latest.next_attempt_at > now:
                    logger.debug("Skipping %s, retry scheduled for %s", dedupe_key, latest.next_attempt_at)
                    continue
                retry_count = latest.retry_count + 1 if latest else 0
                payload = self._build_payload(request, recipient, event)
                log = self._attempt(
                    request_id=request.id,
                    recipient=recipient.address,
                    channel=recipient.channel,
                    notification_type=event.event_type.value,
                    dedupe_key=dedupe_key,
                    payload=payload,
                    retry_count=retry_count,
                    now=now,
                )
                if log is not None:
                    attempts.append(log)
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception("Could not record notification %s", dedupe_key)
        return attempts

    def resolve_recipients(self, request: SigningRequest, event: WorkflowEvent) -> list[Recipient]:
        include_owner, signer_scope = FAN_OUT[event.event_type]
        recipients: list[Recipient] = []
        if include_owner and request.owner_email:
            owner = self.session.get(User, request.owner_id) if request.owner_id else None
            recipients.append(
                Recipient(
                    address=request.owner_email,
                    channel="email",
                    name=owner.full_name if owner else request.owner_email,
                    user_id=request.owner_id,
                    is_owner=True,
                )
            )

        if signer_scope == "none":
            return recipients
        signers = self.session.exec(
            select(Signer).where(Signer.request_id == request.id).order_by(Signer.signing_order)
        ).all()
        wanted = set(event.signer_ids)
        seen = {item.address.lower() for item in recipients}
        for signer in signers:
            if signer_scope == "event" and signer.id not in wanted:
                continue
            use_sms = signer.notification_channel == "sms" and bool(signer.phone_number)
            address = signer.phone_number if use_sms else signer.email
            if address.lower() in seen:
                continue
            seen.add(address.lower())
            recipients.append(
                Recipient(
                    address=address,
                    channel="sms" if use_sms else "email",
                    name=signer.full_name,
                    user_id=signer.user_id,
                    signer_id=signer.id,
                )
            )
        return recipients

    def _build_payload(self, request: SigningRequest, recipient: Recipient, event: WorkflowEvent) -> dict[str, Any]:
        base_url = app_settings.resolved_public_app_url()
        actor = self.session.get(Signer, event.actor_signer_id) if event.actor_signer_id else None
        payload: dict[str, Any] = {
            "request_id": str(request.id),
            "request_title": request.title,
            "request_message": request.message,
            "request_status": request.status.value,
            "recipient": recipient.address,
            "recipient_name": recipient.name,
            "is_owner": recipient.is_owner,
            "actor_email": actor.email if actor else None,
            "actor_name": actor.full_name if actor else None,
            "reason": event.extra.get("reason") or request.decline_reason,
            "trigger": event.trigger,
        }
        if request.expires_at:
            payload["expires_at"] = request.expires_at.isoformat()
            payload["expires_at_display"] = request.expires_at.strftime("%Y-%m-%d %H:%M UTC")
        if recipient.signer_id and base_url:
            payload["action_link"] = f"{base_url}/sign/{request.id}/{recipient.signer_id}"
        elif recipient.is_owner and base_url:
            payload["action_link"] = f"{base_url}/requests/{request.id}"
        return payload

    def _store_in_app(
        self,
        request: SigningRequest,
        recipient: Recipient,
        event: WorkflowEvent,
        dedupe_key: str,
        now: datetime,
    ) -> None:
        if not recipient.user_id:
            return
        existing = self.session.exec(
            select(UserNotification)
            .where(UserNotification.recipient_id == recipient.user_id)
            .where(UserNotification.dedupe_key == dedupe_key)
        ).first()
        if existing:
            return
        notification = UserNotification(
            request_id=request.id,
            recipient_id=recipient.user_id,
            dedupe_key=dedupe_key,
            event_type=event.event_type.value,
            payload={
                "title": render_subject(event.event_type.value, {"request_title": request.title}),
                "request_status": request.status.value,
            },
        )
        notification.created_at = now
        self.session.add(notification)
        self.session.commit()

    # Attempts --------------------------------------------------------------
    def _latest_attempt(self, dedupe_key: str) -> NotificationLog | None:
        return self.session.exec(
            select(NotificationLog)
            .where(NotificationLog.dedupe_key == dedupe_key)
            .order_by(NotificationLog.retry_count.desc(), NotificationLog.created_at.desc())
        ).first()

    def _attempt(
        self,
        *,
        request_id: UUID,
        recipient: str,
        channel: str,
        notification_type: str,
        dedupe_key: str,
        payload: dict[str, Any],
        retry_count: int,
        now: datetime,
    ) -> NotificationLog | None:
        """Claim the attempt slot, then call the transport.

        The row is committed before anything leaves the process, so a second
        worker racing on the same dedupe key hits the unique constraint and
        backs off. Returns ``None`` when the slot was already taken.
        """
        log = NotificationLog(
            request_id=request_id,
            recipient=recipient,
            channel=channel,
            notification_type=notification_type,
            dedupe_key=dedupe_key,
            status=NotificationStatus.SENT,
            retry_count=retry_count,
            attempt_number=retry_count,
            payload=payload,
        )
        log.created_at = now
        self.session.add(log)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info("Notification %s attempt %d already claimed", dedupe_key, retry_count)
            return None

        transport = self.transports.get(channel)
        try:
            if transport is None:
                raise TransportError(f"No transport configured for {channel}")
            log.provider_message_id = transport.send(recipient, notification_type, payload)
        except TransportError as exc:
            self._mark_failed(log, exc, permanent=isinstance(exc, PermanentTransportError), now=now)
        except Exception as exc:
            logger.exception("Transport %s raised while sending %s", channel, dedupe_key)
            self._mark_failed(log, exc, permanent=False, now=now)

        self.session.add(log)
        if log.exhausted:
            logger.error(
                "Notification %s to %s gave up after %d retries: %s",
                notification_type,
                recipient,
                retry_count,
                log.error_message,
            )
            self.audit_service.record_event(
                event_type="notification_dispatch_failed",
                request_id=request_id,
                details={
                    "recipient": recipient,
                    "channel": channel,
                    "notification_type": notification_type,
                    "dedupe_key": dedupe_key,
                    "retry_count": retry_count,
                    "error": log.error_message,
                },
                commit=False,
                created_at=now,
            )
        elif log.status == NotificationStatus.FAILED:
            logger.warning("Notification %s to %s failed, retry at %s", notification_type, recipient, log.next_attempt_at)
        else:
            logger.info("Notification %s sent to %s via %s", notification_type, recipient, channel)
        self.session.commit()
        self.session.refresh(log)
        return log

    def _mark_failed(self, log: NotificationLog, exc: Exception, *, permanent: bool, now: datetime) -> None:
        log.status = NotificationStatus.FAILED
        log.error_message = str(exc) or exc.__class__.__name__
        if permanent or log.retry_count >= self.max_retries:
            log.exhausted = True
        else:
            log.next_attempt_at = now + compute_backoff_delay(log.retry_count + 1)

    def due_retries(self, now: datetime, limit: int = 100) -> list[NotificationLog]:
        later = aliased(NotificationLog)
        superseded = (
            select(later.id)
            .where(later.dedupe_key == NotificationLog.dedupe_key)
            .where(
                or_(
                    later.retry_count > NotificationLog.retry_count,
                    later.status.in_(list(SETTLED_NOTIFICATION_STATUSES)),
                )
            )
            .exists()
        )
        statement = (
            select(NotificationLog)
            .where(NotificationLog.status == NotificationStatus.FAILED)
            .where(NotificationLog.exhausted.is_(False))
            .where(NotificationLog.next_attempt_at.is_not(None))
            .where(NotificationLog.next_attempt_at <= now)
            .where(~superseded)
            .order_by(NotificationLog.next_attempt_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def retry_failed(self, now: datetime, limit: int = 100) -> list[NotificationLog]:
        """Re-dispatch failed attempts whose backoff has elapsed."""
        attempts: list[NotificationLog] = []
        for failed in self.due_retries(now, limit=limit):
            log = self._attempt(
                request_id=failed.request_id,
                recipient=failed.recipient,
                channel=failed.channel,
                notification_type=failed.notification_type,
                dedupe_key=failed.dedupe_key,
                payload=dict(failed.payload or {}),
                retry_count=failed.retry_count + 1,
                now=now,
            )
            if log is not None:
                attempts.append(log)
        return attempts

    # Provider callbacks ----------------------------------------------------
    def mark_delivered(self, provider_message_id: str, now: datetime, detail: str | None = None) -> NotificationLog:
        return self._record_outcome(provider_message_id, NotificationStatus.DELIVERED, now, detail)

    def mark_bounced(self, provider_message_id: str, now: datetime, detail: str | None = None) -> NotificationLog:
        return self._record_outcome(provider_message_id, NotificationStatus.BOUNCED, now, detail)

    def _record_outcome(
        self,
        provider_message_id: str,
        status: NotificationStatus,
        now: datetime,
        detail: str | None,
    ) -> NotificationLog:
        source = self.session.exec(
            select(NotificationLog)
            .where(NotificationLog.provider_message_id == provider_message_id)
            .order_by(NotificationLog.created_at.desc())
        ).first()
        if not source:
            raise InvalidRequest("Unknown provider message id")
        log = NotificationLog(
            request_id=source.request_id,
            recipient=source.recipient,
            channel=source.channel,
            notification_type=source.notification_type,
            dedupe_key=source.dedupe_key,
            status=status,
            retry_count=source.retry_count,
            provider_message_id=provider_message_id,
            error_message=detail if status == NotificationStatus.BOUNCED else None,
        )
        log.created_at = now
        self.session.add(log)
        self.session.commit()
        self.session.refresh(log)
        if status == NotificationStatus.BOUNCED:
            logger.warning("Notification %s to %s bounced: %s", source.notification_type, source.recipient, detail)
        return log

    def list_for_request(self, request_id: UUID) -> list[NotificationLog]:
        return list(
            self.session.exec(
                select(NotificationLog)
                .where(NotificationLog.request_id == request_id)
                .order_by(NotificationLog.created_at, NotificationLog.retry_count)
            ).all()
        )
