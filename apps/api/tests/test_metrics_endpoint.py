from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eduflare import events
from eduflare.core.auth import AuthUser, get_current_user as auth_get_current_user
from eduflare.core.config import get_settings
from eduflare.core.database import Base, get_db
from eduflare.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


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


def test_metrics_endpoint_exposes_http_and_case_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/cases/leads", json={"name": "Metrics Lead"})
    assert lead.status_code == 201

    converted = client.post(
        f"/api/cases/leads/{lead.json()['id']}/convert",
        json={"assigned_staff_id": "staff-1", "payment_amount": "50000", "receipt_ref": "rcpt-metrics"},
    )
    assert converted.status_code == 201

    refused = client.post(f"/api/cases/leads/{lead.json()['id']}/status", json={"status": "hot"})
    assert refused.status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "case_transitions_total" in body
    assert "case_operation_duration_seconds" in body
    assert "case_operation_failures_total" in body
    assert "audit_entries_appended_total" in body
    assert "ledger_rows_created_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/cases/leads/{id}/convert"' in body
    assert 'entity_kind="lead",from_status="new",to_status="converted"' in body
    assert 'code="invalid_transition",operation="lead.change_status"' in body
    failures = REGISTRY.get_sample_value(
        "case_operation_failures_total",
        {"operation": "lead.change_status", "code": "invalid_transition"},
    )
    assert failures is not None and failures >= 1


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
