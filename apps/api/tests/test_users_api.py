from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.api import ActorUser, get_current_user
from app.authz.models import AuthSession, Profile, UserRole
from app.core.config import get_settings
from app.core.database import Base, get_db
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
    return {"role": "admin"}


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


def test_admin_lists_users_with_roles(client: TestClient) -> None:
    response = client.get("/api/users")
    assert response.status_code == 200
    by_email = {item["email"]: item for item in response.json()}
    assert by_email["manager@example.com"]["roles"] == ["manager"]
    assert by_email["admin@example.com"]["full_name"] == "Alice Admin"


def test_non_admin_cannot_list_users(client: TestClient, acting_as: dict[str, str]) -> None:
    acting_as["role"] = "manager"

    response = client.get("/api/users")
    assert response.status_code == 403
    assert response.json()["detail"] == "Missing role: admin"


def test_role_stats_and_directory_are_open_to_any_member(client: TestClient, acting_as: dict[str, str]) -> None:
    acting_as["role"] = "team_member"

    stats = client.get("/api/users/stats")
    assert stats.status_code == 200
    assert stats.json() == {"total_users": 3, "admins": 1, "managers": 1, "team_members": 1}

    directory = client.get("/api/users/directory")
    assert directory.status_code == 200
    assert [item["full_name"] for item in directory.json()] == ["Alice Admin", "Mona Manager", "Tom Member"]


def test_admin_changes_role_and_deactivates_user(
    client: TestClient,
    db_session: Session,
    users: dict[str, SeededUser],
) -> None:
    member = users["team_member"]
    db_session.add(AuthSession(user_id=member.id, expires_at=datetime.now(timezone.utc) + timedelta(hours=1)))
    db_session.commit()

    response = client.patch(f"/api/users/{member.id}", json={"role": "manager", "status": "inactive"})
    assert response.status_code == 200
    assert response.json()["roles"] == ["manager"]
    assert response.json()["status"] == "inactive"

    auth_session = db_session.scalar(select(AuthSession).where(AuthSession.user_id == member.id))
    assert auth_session is not None
    assert auth_session.revoked_at is not None
    assert any(entry["entity_type"] == "profile" and entry["action"] == "update" for entry in audit.audit_entries)
    assert any(
        event["event_type"] == "auth.session_changed" and event["payload"]["change"] == "SIGNED_OUT"
        for event in events.published_events
    )


def test_admin_cannot_delete_own_account(client: TestClient, users: dict[str, SeededUser]) -> None:
    response = client.delete(f"/api/users/{users['admin'].id}")
    assert response.status_code == 422


def test_admin_deletes_user(client: TestClient, db_session: Session, users: dict[str, SeededUser]) -> None:
    response = client.delete(f"/api/users/{users['team_member'].id}")
    assert response.status_code == 204
    assert db_session.scalar(select(Profile).where(Profile.id == users["team_member"].id)) is None


def test_update_unknown_user_is_not_found(client: TestClient) -> None:
    response = client.patch(f"/api/users/{uuid.uuid4()}", json={"full_name": "Nobody"})
    assert response.status_code == 404
