from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eduflare import events
from eduflare.cases.models import Student
from eduflare.core.auth import AuthUser, get_current_user as auth_get_current_user, issue_token
from eduflare.core.config import get_settings
from eduflare.core.database import Base, get_db
from eduflare.main import app
from eduflare.platform.ledger.models import Invoice


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
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def identity() -> dict[str, str | None]:
    return {"sub": "staff-1", "role": "staff"}


@pytest.fixture()
def client(db_session: Session, identity: dict[str, str | None]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub=str(identity["sub"]), role=identity["role"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _act_as(identity: dict[str, str | None], sub: str, role: str | None) -> None:
    identity["sub"] = sub
    identity["role"] = role


def _create_lead(client: TestClient) -> dict:
    response = client.post("/api/cases/leads", json={"name": "Grace Mwakyusa", "email": "grace@example.com", "source": "website"})
    assert response.status_code == 201
    return response.json()


def _convert(client: TestClient, lead_id: str) -> dict:
    response = client.post(
        f"/api/cases/leads/{lead_id}/convert",
        json={
            "assigned_staff_id": "staff-1",
            "payment_amount": "50000",
            "payment_currency": "TZS",
            "receipt_ref": "rcpt-001",
        },
    )
    assert response.status_code == 201
    return response.json()


def _active_student(client: TestClient) -> dict:
    student = _convert(client, _create_lead(client)["id"])
    activated = client.post(
        f"/api/cases/students/{student['id']}/activate",
        json={"signed_contract_ref": "contract-001", "deposit_receipt_ref": "deposit-001"},
    )
    assert activated.status_code == 200
    profile = client.patch(
        f"/api/cases/students/{student['id']}/profile",
        json={
            "passport_number": "TZ1234567",
            "passport_expiry": (date.today() + timedelta(days=400)).isoformat(),
            "family_members": [{"name": "Peter Mwakyusa", "relation": "father"}],
            "education_history": [{"institution": "Iringa Girls", "level": "secondary"}],
        },
    )
    assert profile.status_code == 200
    return profile.json()


def test_lead_conversion_over_http(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)
    assert lead["status"] == "new"
    assert lead["assigned_staff_id"] == "staff-1"

    student = _convert(client, lead["id"])
    assert student["status"] == "pending_contract"
    assert student["current_step"] == 1

    invoices = client.get(f"/api/cases/students/{student['id']}/invoices")
    assert invoices.status_code == 200
    assert [row["type"] for row in invoices.json()] == ["opening_book"]
    assert invoices.json()[0]["status"] == "paid"

    fetched = client.get(f"/api/cases/leads/{lead['id']}")
    assert fetched.json()["status"] == "converted"
    assert fetched.json()["converted_student_id"] == student["id"]


def test_validation_error_envelope(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(client)

    response = client.post(
        f"/api/cases/leads/{lead['id']}/convert",
        json={"assigned_staff_id": "staff-1", "payment_amount": "0", "receipt_ref": "rcpt-001"},
        headers={"X-Correlation-Id": "corr-convert-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["message"]
    assert body["correlation_id"] == "corr-convert-1"
    assert response.headers["x-correlation-id"] == "corr-convert-1"
    assert db_session.scalar(select(func.count()).select_from(Student)) == 0
    assert db_session.scalar(select(func.count()).select_from(Invoice)) == 0


def test_invalid_transition_maps_to_conflict(client: TestClient) -> None:
    lead = _create_lead(client)
    lost = client.post(f"/api/cases/leads/{lead['id']}/status", json={"status": "lost"})
    assert lost.status_code == 200

    response = client.post(f"/api/cases/leads/{lead['id']}/status", json={"status": "hot"})
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "invalid_transition"
    assert body["details"] == {"entity_kind": "lead", "current": "lost", "requested": "hot"}
    assert body["correlation_id"]


def test_forbidden_maps_to_403(client: TestClient, identity: dict[str, str | None]) -> None:
    lead = _create_lead(client)

    response = client.post(f"/api/cases/leads/{lead['id']}/assign", json={"assigned_staff_id": "staff-2"})
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    _act_as(identity, "admin-1", "admin")
    assigned = client.post(f"/api/cases/leads/{lead['id']}/assign", json={"assigned_staff_id": "staff-2"})
    assert assigned.status_code == 200
    assert assigned.json()["assigned_staff_id"] == "staff-2"

    _act_as(identity, "staff-1", "staff")
    response = client.get(f"/api/cases/leads/{lead['id']}")
    assert response.status_code == 403


def test_locked_field_error_lists_fields(client: TestClient) -> None:
    student = _active_student(client)
    submitted = client.post(f"/api/cases/students/{student['id']}/submit")
    assert submitted.status_code == 200
    assert submitted.json()["is_profile_locked"] is True

    response = client.patch(f"/api/cases/students/{student['id']}/profile", json={"passport_number": "TZ0000000"})
    assert response.status_code == 403
    assert response.json()["details"]["fields"] == ["passport_number"]


def test_precondition_failure_maps_to_412(client: TestClient, identity: dict[str, str | None]) -> None:
    student = _active_student(client)
    _act_as(identity, "admin-1", "admin")
    university = client.post("/api/cases/universities", json={"name": "Istanbul University", "country": "turkey"})
    assert university.status_code == 201

    _act_as(identity, "staff-1", "staff")
    application = client.post(
        "/api/cases/applications",
        json={
            "student_id": student["id"],
            "university_id": university.json()["id"],
            "program": "MBBS",
            "batch": 1,
            "priority": 1,
        },
    )
    assert application.status_code == 201

    response = client.post(f"/api/cases/applications/{application.json()['id']}/submit")
    assert response.status_code == 412
    body = response.json()
    assert body["code"] == "precondition_failed"
    assert body["details"] == {"missing": ["certificate", "passport", "transcript"]}


def test_unlock_flow_over_http(client: TestClient, identity: dict[str, str | None]) -> None:
    student = _active_student(client)
    client.post(f"/api/cases/students/{student['id']}/submit")

    requested = client.post(
        f"/api/cases/students/{student['id']}/unlock-requests",
        json={"fields": ["passport_number"], "reason": "passport renewed"},
    )
    assert requested.status_code == 201

    _act_as(identity, "admin-1", "admin")
    pending = client.get("/api/cases/unlock-requests", params={"status": "pending"})
    assert [row["id"] for row in pending.json()] == [requested.json()["id"]]

    resolved = client.post(
        f"/api/cases/unlock-requests/{requested.json()['id']}/resolve",
        json={"decision": "approved", "admin_notes": "renewal confirmed"},
    )
    assert resolved.status_code == 200
    again = client.post(f"/api/cases/unlock-requests/{requested.json()['id']}/resolve", json={"decision": "denied"})
    assert again.status_code == 409
    assert again.json()["code"] == "invalid_state"

    _act_as(identity, "staff-1", "staff")
    updated = client.patch(f"/api/cases/students/{student['id']}/profile", json={"passport_number": "TZ7654321"})
    assert updated.status_code == 200
    assert updated.json()["unlocked_fields"] == ["passport_number"]


def test_refund_and_revenue_over_http(client: TestClient, identity: dict[str, str | None]) -> None:
    student = _convert(client, _create_lead(client)["id"])
    invoice_id = client.get(f"/api/cases/students/{student['id']}/invoices").json()[0]["id"]

    forbidden = client.post(f"/api/cases/invoices/{invoice_id}/refunds", json={"amount": "20000", "reason": "deferral"})
    assert forbidden.status_code == 403

    _act_as(identity, "admin-1", "admin")
    refund = client.post(f"/api/cases/invoices/{invoice_id}/refunds", json={"amount": "20000", "reason": "deferral"})
    assert refund.status_code == 201
    assert refund.json()["type"] == "refund"
    assert refund.json()["reverses_invoice_id"] == invoice_id

    too_much = client.post(f"/api/cases/invoices/{invoice_id}/refunds", json={"amount": "40000", "reason": "more"})
    assert too_much.status_code == 422

    revenue = client.get("/api/cases/revenue", params={"student_id": student["id"]})
    assert revenue.status_code == 200
    line = revenue.json()["lines"][0]
    assert line["currency"] == "TZS"
    assert float(line["net"]) == 30000


def test_not_found_and_unauthenticated(client: TestClient, identity: dict[str, str | None]) -> None:
    missing = client.get("/api/cases/students/00000000-0000-4000-8000-000000000000")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
    assert missing.json()["details"]["entity_type"] == "student"

    _act_as(identity, "anonymous", None)
    response = client.get("/api/cases/leads")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_audit_query_by_correlation_id(client: TestClient, identity: dict[str, str | None]) -> None:
    response = client.post(
        "/api/cases/leads",
        json={"name": "Joseph Lyimo"},
        headers={"X-Correlation-Id": "corr-audit-http"},
    )
    assert response.status_code == 201

    _act_as(identity, "admin-1", "admin")
    entries = client.get("/api/cases/audit", params={"correlation_id": "corr-audit-http"})
    assert entries.status_code == 200
    assert [row["action"] for row in entries.json()] == ["lead.created"]
    assert entries.json()[0]["actor_id"] == "staff-1"
    assert entries.json()[0]["entity_id"] == response.json()["id"]


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_bearer_tokens_resolve_role(client: TestClient) -> None:
    app.dependency_overrides.pop(auth_get_current_user)

    anonymous = client.get("/api/cases/leads")
    assert anonymous.status_code == 401

    forged = client.get("/api/cases/leads", headers={"Authorization": "Bearer not-a-token"})
    assert forged.status_code == 401

    token = issue_token("admin-7", "admin")
    response = client.get("/api/cases/leads", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == []
