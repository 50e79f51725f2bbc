from uuid import uuid4

import pytest

from app.models.workflow import Signer, SignerStatus, SigningRequest, SigningRequestStatus
from app.services.cascade import CascadeResolver, TerminalEventKind
from tests.conftest import NOW


def _request_with_signers(*statuses: SignerStatus) -> tuple[SigningRequest, list[Signer]]:
    request = SigningRequest(owner_email="owner@example.com", title="NDA", status=SigningRequestStatus.IN_PROGRESS)
    signers = [
        Signer(
            id=uuid4(),
            request_id=request.id,
            email=f"s{index}@example.com",
            full_name=f"Signer {index}",
            signing_order=index,
            status=status,
        )
        for index, status in enumerate(statuses, start=1)
    ]
    return request, signers


def test_decline_closes_every_open_signer() -> None:
    request, signers = _request_with_signers(
        SignerStatus.SIGNED, SignerStatus.DECLINED, SignerStatus.VIEWED, SignerStatus.PENDING
    )
    decliner = signers[1]

    affected = CascadeResolver().on_terminal_signer_event(
        request, signers, decliner.id, TerminalEventKind.DECLINE, NOW, reason="No"
    )

    assert affected == [signers[2].id, signers[3].id]
    assert request.status == SigningRequestStatus.DECLINED
    assert request.declined_at == NOW
    assert request.declined_by == decliner.id
    assert signers[0].status == SignerStatus.SIGNED
    assert signers[0].declined_at is None
    assert {signers[2].decline_reason, signers[3].decline_reason} == {
        "Declined automatically: s2@example.com declined the request"
    }


def test_expiry_has_no_decliner() -> None:
    request, signers = _request_with_signers(SignerStatus.SIGNED, SignerStatus.PENDING)

    affected = CascadeResolver().on_terminal_signer_event(request, signers, None, TerminalEventKind.EXPIRED, NOW)

    assert affected == [signers[1].id]
    assert request.status == SigningRequestStatus.EXPIRED
    assert request.expired_at == NOW
    assert request.declined_by is None
    assert signers[1].decline_reason == "Request expired"


def test_decline_needs_the_triggering_signer() -> None:
    request, signers = _request_with_signers(SignerStatus.PENDING)

    with pytest.raises(ValueError):
        CascadeResolver().on_terminal_signer_event(request, signers, uuid4(), TerminalEventKind.DECLINE, NOW)
