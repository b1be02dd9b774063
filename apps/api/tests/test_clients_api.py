from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.api import ActorUser, get_current_user
from app.authz.models import Profile, UserRole
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMClient
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@dataclass
class SeededUser:
    id: uuid.UUID
    email: str
    full_name: str
    role: str


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, SeededUser]:
    names = {"admin": "Alice Admin", "manager": "Mona Manager", "team_member": "Tom Member"}
    seeded: dict[str, SeededUser] = {}
    for role, full_name in names.items():
        profile = Profile(email=f"{role}@example.com", full_name=full_name, password_hash="unused")
        db_session.add(profile)
        db_session.flush()
        db_session.add(UserRole(user_id=profile.id, role=role))
        seeded[role] = SeededUser(id=profile.id, email=profile.email, full_name=full_name, role=role)
    db_session.commit()
    return seeded


@pytest.fixture()
def acting_as() -> dict[str, str]:
    return {"role": "manager"}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, SeededUser],
    acting_as: dict[str, str],
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        user = users[acting_as["role"]]
        return ActorUser(
            user_id=str(user.id),
            session_id=str(uuid.uuid4()),
            email=user.email,
            full_name=user.full_name,
            roles={user.role},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_client(client: TestClient, **overrides) -> dict:  # type: ignore[no-untyped-def]
    payload = {"name": "Initech", "company": "Initech LLC", "email": "ops@initech.example", "status": "prospect"}
    payload.update(overrides)
    response = client.post("/api/crm/clients", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_and_get_client(client: TestClient, users: dict[str, SeededUser]) -> None:
    created = _create_client(client, assigned_user_id=str(users["team_member"].id), address="1 Main St")

    assert created["status"] == "prospect"
    assert created["assigned_user_id"] == str(users["team_member"].id)
    assert any(entry["entity_type"] == "crm.client" and entry["action"] == "create" for entry in audit.audit_entries)

    fetched = client.get(f"/api/crm/clients/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["address"] == "1 Main St"


def test_list_clients_filters(client: TestClient) -> None:
    _create_client(client, name="Initech")
    _create_client(client, name="Globex", company="Globex Corp", email="hq@globex.example", status="active")

    assert [item["name"] for item in client.get("/api/crm/clients").json()] == ["Globex", "Initech"]
    assert [item["name"] for item in client.get("/api/crm/clients", params={"q": "globex"}).json()] == ["Globex"]
    assert [item["name"] for item in client.get("/api/crm/clients", params={"status": "prospect"}).json()] == [
        "Initech"
    ]


def test_update_client_logs_activity(client: TestClient) -> None:
    created = _create_client(client)

    response = client.patch(f"/api/crm/clients/{created['id']}", json={"status": "active", "phone": "555-0199"})
    assert response.status_code == 200
    assert response.json()["status"] == "active"

    activities = client.get(f"/api/crm/clients/{created['id']}/activities").json()
    assert sorted(item["description"] for item in activities) == ["Client created", "Client updated"]


def test_client_notes_log_activity(client: TestClient) -> None:
    created = _create_client(client)

    note = client.post(f"/api/crm/clients/{created['id']}/notes", json={"note": "Renewal due in March"})
    assert note.status_code == 201
    assert note.json()["entity_type"] == "client"

    assert [item["note"] for item in client.get(f"/api/crm/clients/{created['id']}/notes").json()] == [
        "Renewal due in March"
    ]
    activities = client.get(f"/api/crm/clients/{created['id']}/activities").json()
    assert any(item["activity_type"] == "note_added" and item["description"] == "Added a note" for item in activities)


def test_note_author_can_delete_own_note(client: TestClient, acting_as: dict[str, str]) -> None:
    created = _create_client(client)
    acting_as["role"] = "team_member"
    note = client.post(f"/api/crm/clients/{created['id']}/notes", json={"note": "Mine"}).json()

    assert client.delete(f"/api/crm/notes/{note['id']}").status_code == 204


def test_missing_client_returns_not_found_envelope(client: TestClient) -> None:
    response = client.patch(f"/api/crm/clients/{uuid.uuid4()}", json={"name": "Nobody"})
    assert response.status_code == 404
    assert response.json()["code"] == "crm_client_update_failed"
    assert response.json()["message"] == "client not found"


def test_only_managers_delete_clients(client: TestClient, db_session: Session, acting_as: dict[str, str]) -> None:
    created = _create_client(client)

    acting_as["role"] = "team_member"
    assert client.delete(f"/api/crm/clients/{created['id']}").status_code == 403

    acting_as["role"] = "manager"
    assert client.delete(f"/api/crm/clients/{created['id']}").status_code == 204
    assert db_session.scalar(select(CRMClient).where(CRMClient.id == uuid.UUID(created["id"]))) is None
