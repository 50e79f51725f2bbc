from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from app.api.deps import get_db
from app.db import session as db_session_module
from app.main import app
from app.models.organization import Organization
from app.models.user import User, UserRole
from app.models.workflow import SigningMode, SigningRequest
from app.schemas.workflow import SignerCreate, SigningRequestCreate
from app.services import notification as notification_module
from app.services.notification import PermanentTransportError, TransportError
from app.services.signer_registry import SignerRegistry
from app.services.workflow import WorkflowStateMachine
from app.utils.security import create_access_token

pytestmark = pytest.mark.anyio

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        connect_args = {"options": f"-csearch_path={schema_name},public"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    def override_get_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    yield engine

    app.dependency_overrides.pop(get_db, None)
    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def storage_env(monkeypatch, tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("SIGNFLOW_STORAGE", str(storage_dir))
    yield storage_dir


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


class FakeTransport:
    """Records messages instead of sending them; can be told to fail."""

    def __init__(self, failures: int = 0, permanent: bool = False) -> None:
        self.failures = failures
        self.permanent = permanent
        self.sent: list[dict[str, Any]] = []
        self.calls = 0

    def send(self, recipient: str, template_id: str, payload: dict[str, Any]) -> str | None:
        self.calls += 1
        if self.permanent:
            raise PermanentTransportError("mailbox does not exist")
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("connection reset")
        message_id = f"msg-{len(self.sent) + 1}"
        self.sent.append({"recipient": recipient, "template_id": template_id, "payload": payload, "id": message_id})
        return message_id

    def recipients(self, template_id: str | None = None) -> list[str]:
        return [item["recipient"] for item in self.sent if template_id is None or item["template_id"] == template_id]


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def transports(fake_transport: FakeTransport) -> dict[str, FakeTransport]:
    return {"email": fake_transport, "sms": fake_transport}


@pytest.fixture()
def client(db_engine, storage_env, monkeypatch, transports) -> TestClient:
    monkeypatch.setattr(notification_module, "build_transports", lambda settings=None: transports)
    return TestClient(app)


def make_organization(session: Session, *, enforce_second_factor: bool = False) -> Organization:
    organization = Organization(
        name="Acme",
        slug=f"acme-{uuid.uuid4().hex[:8]}",
        enforce_signing_second_factor=enforce_second_factor,
    )
    session.add(organization)
    session.commit()
    session.refresh(organization)
    return organization


def make_user(
    session: Session,
    email: str,
    *,
    role: UserRole = UserRole.MEMBER,
    organization: Organization | None = None,
    full_name: str | None = None,
) -> User:
    user = User(
        organization_id=organization.id if organization else None,
        email=email.lower(),
        full_name=full_name or email.split("@")[0].title(),
        role=role.value,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_request(
    session: Session,
    owner: User,
    signer_emails: list[str],
    *,
    mode: SigningMode = SigningMode.SEQUENTIAL,
    requires_second_factor: bool = False,
    created_at: datetime = NOW - timedelta(hours=1),
    expires_at: datetime | None = None,
    send: bool = True,
) -> SigningRequest:
    payload = SigningRequestCreate(
        title="Service agreement",
        signing_mode=mode,
        requires_second_factor=requires_second_factor,
        expires_at=expires_at or created_at + timedelta(days=30),
        signers=[
            SignerCreate(email=email, full_name=email.split("@")[0].title(), signing_order=index)
            for index, email in enumerate(signer_emails, start=1)
        ],
    )
    request = SignerRegistry(session).create_request(payload, owner=owner, now=created_at)
    if send:
        WorkflowStateMachine(session).send_request(request.id, created_at)
        session.refresh(request)
    return request


def signer_ids(session: Session, request: SigningRequest) -> list[uuid.UUID]:
    return [signer.id for signer in SignerRegistry(session).list_signers(request.id)]


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(
        str(user.id),
        str(user.organization_id) if user.organization_id else None,
    )
    return {"Authorization": f"Bearer {token}"}
