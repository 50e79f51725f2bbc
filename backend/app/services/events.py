from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class NotificationType(str, Enum):
    SIGNATURE_REQUESTED = "signature_requested"
    SIGNER_SIGNED = "signer_signed"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_DECLINED = "request_declined"
    REMINDER = "reminder"
    EXPIRY_WARNING = "expiry_warning"
    REQUEST_EXPIRED = "request_expired"


@dataclass(frozen=True)
class WorkflowEvent:
    """One workflow occurrence handed to the notification dispatcher.

    ``trigger`` names the logical occurrence (a signer id, a reminder cycle, an
    expiry instant); together with request, recipient and type it forms the
    idempotency key of every message fanned out from the event.
    """

    event_type: NotificationType
    request_id: UUID
    trigger: str
    occurred_at: datetime
    signer_ids: tuple[UUID, ...] = ()
    actor_signer_id: UUID | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
