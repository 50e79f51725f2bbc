from datetime import timedelta

import pytest
from sqlmodel import Session, select

from app.models.audit import AuditLog
from app.models.workflow import ArtifactStatus, SigningMode, SigningRequest, SigningRequestStatus
from app.services.artifact import CompletionArtifactService, CompletionCertificateGenerator
from app.services.engine import SigningEngine
from app.services.signer_registry import SignerRegistry
from app.services.storage import LocalStorage
from tests.conftest import NOW, make_request, make_user, signer_ids


class FlakyGenerator:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0

    def generate(self, request, signers, events) -> bytes:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("renderer crashed")
        return f"certificate for {request.id} with {len(signers)} signers".encode()


@pytest.fixture()
def owner(db_session: Session):
    return make_user(db_session, "owner@example.com")


def _engine(db_session: Session, transports, generator, tmp_path) -> SigningEngine:
    return SigningEngine(db_session, transports=transports, generator=generator, storage=LocalStorage(tmp_path))


def test_engine_completes_request_and_stores_artifact(db_session: Session, owner, transports, fake_transport, tmp_path) -> None:
    request = make_request(db_session, owner, ["a@example.com", "b@example.com"], mode=SigningMode.PARALLEL)
    first, second = signer_ids(db_session, request)
    generator = FlakyGenerator()
    engine = _engine(db_session, transports, generator, tmp_path)

    engine.submit_action(request.id, first, "sign", now=NOW)
    result = engine.submit_action(request.id, second, "sign", now=NOW + timedelta(minutes=1))

    assert result.request_status == SigningRequestStatus.COMPLETED
    db_session.refresh(request)
    assert request.artifact_status == ArtifactStatus.GENERATED
    assert request.artifact_attempts == 1
    assert (tmp_path / request.artifact_path).read_bytes().startswith(b"certificate for")
    assert generator.calls == 1
    assert fake_transport.recipients("signer_signed") == ["owner@example.com"]
    assert sorted(fake_transport.recipients("request_completed")) == [
        "a@example.com",
        "b@example.com",
        "owner@example.com",
    ]

    generated = db_session.exec(select(AuditLog).where(AuditLog.event_type == "artifact_generated")).one()
    assert len(generated.details["sha256"]) == 64

    # a second trigger for the same completion does nothing
    assert engine.artifacts.generate(request.id, NOW + timedelta(minutes=2)) is None
    assert generator.calls == 1


def test_failed_generation_is_retried_by_the_sweep(db_session: Session, owner, transports, tmp_path) -> None:
    request = make_request(db_session, owner, ["a@example.com"])
    (only,) = signer_ids(db_session, request)
    generator = FlakyGenerator(failures=1)
    engine = _engine(db_session, transports, generator, tmp_path)

    engine.submit_action(request.id, only, "sign", now=NOW)
    db_session.refresh(request)
    assert request.status == SigningRequestStatus.COMPLETED
    assert request.artifact_status == ArtifactStatus.FAILED

    report = engine.run_reconciliation_sweep(NOW + timedelta(minutes=5))

    assert report.artifact_retries.processed == 1
    assert report.artifact_retries.sent == 1
    db_session.refresh(request)
    assert request.artifact_status == ArtifactStatus.GENERATED
    assert request.artifact_attempts == 2
    failures = db_session.exec(select(AuditLog).where(AuditLog.event_type == "artifact_generation_failed")).all()
    assert len(failures) == 1


def test_generation_attempts_are_bounded(db_session: Session, owner, tmp_path) -> None:
    request = make_request(db_session, owner, ["a@example.com"])
    (only,) = signer_ids(db_session, request)
    SigningEngine(db_session, transports={}).submit_action(request.id, only, "sign", now=NOW, deliver=False)
    generator = FlakyGenerator(failures=10)
    service = CompletionArtifactService(db_session, generator=generator, storage=LocalStorage(tmp_path), max_attempts=2)

    assert service.generate(request.id, NOW).artifact_status == ArtifactStatus.FAILED
    assert service.due_retries() == [request.id]
    assert service.generate(request.id, NOW).artifact_status == ArtifactStatus.FAILED
    assert service.due_retries() == []
    assert service.generate(request.id, NOW) is None
    assert generator.calls == 2


def test_open_request_has_no_artifact(db_session: Session, owner, tmp_path) -> None:
    request = make_request(db_session, owner, ["a@example.com"])
    service = CompletionArtifactService(db_session, generator=FlakyGenerator(), storage=LocalStorage(tmp_path))

    assert service.generate(request.id, NOW) is None
    assert db_session.get(SigningRequest, request.id).artifact_status == ArtifactStatus.NONE


def test_certificate_generator_renders_pdf(db_session: Session, owner) -> None:
    request = make_request(db_session, owner, ["a@example.com"])
    signers = SignerRegistry(db_session).list_signers(request.id)
    events = db_session.exec(select(AuditLog).where(AuditLog.request_id == request.id)).all()

    data = CompletionCertificateGenerator().generate(request, signers, events)

    assert data.startswith(b"%PDF")


def test_abandoned_generation_is_taken_over_after_the_lease(db_session: Session, owner, tmp_path) -> None:
    request = make_request(db_session, owner, ["a@example.com"])
    (only,) = signer_ids(db_session, request)
    SigningEngine(db_session, transports={}).submit_action(request.id, only, "sign", now=NOW, deliver=False)

    class DyingGenerator:
        def generate(self, request, signers, events) -> bytes:
            raise SystemExit("worker killed")

    lease = timedelta(minutes=15)
    crashed = CompletionArtifactService(
        db_session, generator=DyingGenerator(), storage=LocalStorage(tmp_path), claim_lease=lease
    )
    with pytest.raises(SystemExit):
        crashed.generate(request.id, NOW)
    db_session.rollback()
    assert db_session.get(SigningRequest, request.id, populate_existing=True).artifact_status == ArtifactStatus.GENERATING

    service = CompletionArtifactService(
        db_session, generator=FlakyGenerator(), storage=LocalStorage(tmp_path), claim_lease=lease
    )
    assert service.due_retries(NOW + timedelta(minutes=5)) == []
    assert service.generate(request.id, NOW + timedelta(minutes=5)) is None

    assert service.due_retries(NOW + timedelta(minutes=16)) == [request.id]
    recovered = service.generate(request.id, NOW + timedelta(minutes=16))

    assert recovered.artifact_status == ArtifactStatus.GENERATED
    assert recovered.artifact_attempts == 2
    assert recovered.artifact_claimed_at == NOW + timedelta(minutes=16)
