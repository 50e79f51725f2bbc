from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.core.config import settings
from app.models.audit import AuditLog
from app.models.user import UserRole
from app.services.audit import AuditService
from tests.conftest import NOW, auth_headers, make_request, make_user


@pytest.fixture()
def sample_context(db_session: Session) -> dict:
    owner = make_user(db_session, "owner@example.com")
    admin = make_user(db_session, "admin@example.com", role=UserRole.ADMIN)
    request = make_request(db_session, owner, ["a@example.com"])
    return {"owner": owner, "admin": admin, "request": request}


def test_audit_service_records_events(db_session: Session, sample_context: dict) -> None:
    service = AuditService(db_session)
    request = sample_context["request"]
    owner = sample_context["owner"]

    service.record_event(
        event_type="signer_viewed",
        actor_id=owner.id,
        actor_email=owner.email,
        request_id=request.id,
        ip_address="127.0.0.1",
        user_agent="pytest",
        details={"signer": "a@example.com"},
    )

    stored = db_session.exec(select(AuditLog).where(AuditLog.event_type == "signer_viewed")).one()
    assert stored.request_id == request.id
    assert stored.actor_id == owner.id
    assert stored.details["signer"] == "a@example.com"


def test_uncommitted_event_follows_the_transaction(db_session: Session, sample_context: dict) -> None:
    service = AuditService(db_session)

    service.record_event("discarded", request_id=sample_context["request"].id, commit=False)
    db_session.rollback()

    assert db_session.exec(select(AuditLog).where(AuditLog.event_type == "discarded")).first() is None


def test_audit_service_filters(db_session: Session, sample_context: dict) -> None:
    service = AuditService(db_session)
    request = sample_context["request"]

    items, total = service.list_events(
        request_id=request.id,
        start_at=NOW - timedelta(days=1),
        end_at=NOW,
    )

    assert total == 1
    assert [item.event_type for item in items] == ["signing_request_sent"]

    items, total = service.list_events(request_id=uuid4())
    assert total == 0 and items == []


def test_audit_endpoint_is_admin_only(client: TestClient, db_session: Session, sample_context: dict) -> None:
    url = f"{settings.api_v1_str}/audit/events"
    request = sample_context["request"]

    denied = client.get(url, headers=auth_headers(sample_context["owner"]))
    listed = client.get(url, params={"request_id": str(request.id)}, headers=auth_headers(sample_context["admin"]))

    assert denied.status_code == 403
    assert listed.status_code == 200
    body = listed.json()
    assert body["total"] == 1
    assert body["items"][0]["event_type"] == "signing_request_sent"

    single = client.get(f"{url}/{body['items'][0]['id']}", headers=auth_headers(sample_context["admin"]))
    assert single.status_code == 200
    assert client.get(f"{url}/{uuid4()}", headers=auth_headers(sample_context["admin"])).status_code == 404
