from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Sequence
from uuid import UUID

from app.models.workflow import SignerStatus, Signer, SigningRequest, SigningRequestStatus


class TerminalEventKind(str, Enum):
    DECLINE = "decline"
    EXPIRED = "expired"


class CascadeResolver:
    """Propagates a decline or an expiry from one signer to the whole request.

    The resolver only mutates rows already loaded in the caller's session; the
    caller commits them together with the triggering update, so no signer can
    be observed pending while its request is already closed.
    """

    def on_terminal_signer_event(
        self,
        request: SigningRequest,
        signers: Sequence[Signer],
        triggering_signer_id: UUID | None,
        kind: TerminalEventKind,
        now: datetime,
        reason: str | None = None,
    ) -> list[UUID]:
        trigger = next((signer for signer in signers if signer.id == triggering_signer_id), None)

        if kind == TerminalEventKind.DECLINE:
            if trigger is None:
                raise ValueError("A decline cascade needs the declining signer")
            request.status = SigningRequestStatus.DECLINED
            request.declined_at = now
            request.declined_by = trigger.id
            request.decline_reason = reason or trigger.decline_reason
            synthetic_reason = f"Declined automatically: {trigger.email} declined the request"
        else:
            request.status = SigningRequestStatus.EXPIRED
            request.expired_at = now
            synthetic_reason = "Request expired"
        request.updated_at = now

        affected: list[UUID] = []
        for signer in signers:
            if signer.id == triggering_signer_id:
                continue
            if signer.status not in (SignerStatus.PENDING, SignerStatus.VIEWED):
                # signed history stays as recorded
                continue
            signer.status = SignerStatus.DECLINED
            signer.declined_at = now
            signer.decline_reason = synthetic_reason
            signer.updated_at = now
            affected.append(signer.id)
        return affected
