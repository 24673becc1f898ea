from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eduflare import events
from eduflare.core.auth import AuthUser, get_current_user as auth_get_current_user
from eduflare.core.config import get_settings
from eduflare.core.database import Base, get_db
from eduflare.main import app
from eduflare.platform.audit.models import AuditEntry


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="staff-1", role="staff")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/cases/students/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert response.json()["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/cases/students/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post(
        "/api/cases/leads",
        json={"name": "Correlated Lead"},
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    entry = db_session.scalars(select(AuditEntry).where(AuditEntry.entity_id == response.json()["id"])).one()
    assert entry.correlation_id == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    lead = client.post("/api/cases/leads", json={"name": "Evented Lead"})
    response = client.post(
        f"/api/cases/leads/{lead.json()['id']}/convert",
        json={"assigned_staff_id": "staff-1", "payment_amount": "50000", "receipt_ref": "rcpt-corr"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    converted = [item for item in events.published_events if item.get("event_type") == "cases.lead.converted"]
    assert converted
    assert converted[-1].get("correlation_id") == "corr-event-1"
