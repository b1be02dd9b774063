from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.authz.models import AuthSession, Profile, UserRole
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("PASSWORD_HASH_ROUNDS", "4")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _sign_up(client: TestClient, email: str = "ada@example.com", password: str = "secret-pass") -> dict:
    response = client.post(
        "/api/auth/sign-up",
        json={"email": email, "password": password, "full_name": "Ada Lovelace"},
    )
    assert response.status_code == 201
    return response.json()


def test_sign_up_creates_profile_with_default_role(client: TestClient, db_session: Session) -> None:
    body = _sign_up(client, email="Ada@Example.com")

    assert body["email"] == "ada@example.com"
    assert body["full_name"] == "Ada Lovelace"
    assert body["status"] == "active"
    assert "password_hash" not in body

    roles = list(db_session.scalars(select(UserRole.role)))
    assert roles == ["team_member"]


def test_sign_up_rejects_duplicate_email(client: TestClient) -> None:
    _sign_up(client)

    duplicate = client.post(
        "/api/auth/sign-up",
        json={"email": "ada@example.com", "password": "another-pass", "full_name": "Ada Again"},
    )
    assert duplicate.status_code == 409


def test_sign_up_validates_payload(client: TestClient) -> None:
    response = client.post(
        "/api/auth/sign-up",
        json={"email": "not-an-email", "password": "123", "full_name": ""},
    )
    assert response.status_code == 422


def test_sign_in_sets_cookie_and_resolves_session(client: TestClient) -> None:
    _sign_up(client)

    sign_in = client.post("/api/auth/sign-in", json={"email": "ada@example.com", "password": "secret-pass"})
    assert sign_in.status_code == 200
    body = sign_in.json()
    assert body["token_type"] == "bearer"
    assert body["session"]["roles"] == ["team_member"]
    assert client.cookies.get("crm_session") == body["access_token"]

    session = client.get("/api/auth/session")
    assert session.status_code == 200
    assert session.json()["email"] == "ada@example.com"
    assert session.json()["session_id"] == body["session"]["session_id"]

    assert any(
        event["event_type"] == "auth.session_changed" and event["payload"]["change"] == "SIGNED_IN"
        for event in events.published_events
    )


def test_bearer_token_is_accepted(client: TestClient) -> None:
    _sign_up(client)
    token = client.post(
        "/api/auth/sign-in", json={"email": "ada@example.com", "password": "secret-pass"}
    ).json()["access_token"]
    client.cookies.clear()

    response = client.get("/api/auth/session", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_sign_in_with_wrong_password_is_rejected(client: TestClient) -> None:
    _sign_up(client)

    response = client.post("/api/auth/sign-in", json={"email": "ada@example.com", "password": "wrong-pass"})
    assert response.status_code == 401


def test_inactive_user_cannot_sign_in(client: TestClient, db_session: Session) -> None:
    _sign_up(client)
    profile = db_session.scalar(select(Profile).where(Profile.email == "ada@example.com"))
    assert profile is not None
    profile.status = "inactive"
    db_session.commit()

    response = client.post("/api/auth/sign-in", json={"email": "ada@example.com", "password": "secret-pass"})
    assert response.status_code == 403


def test_session_without_credentials_is_unauthorized(client: TestClient) -> None:
    assert client.get("/api/auth/session").status_code == 401
    assert client.get("/api/auth/session", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_sign_out_revokes_session(client: TestClient, db_session: Session) -> None:
    _sign_up(client)
    token = client.post(
        "/api/auth/sign-in", json={"email": "ada@example.com", "password": "secret-pass"}
    ).json()["access_token"]

    sign_out = client.post("/api/auth/sign-out")
    assert sign_out.status_code == 200
    assert sign_out.json() == {"status": "signed_out"}

    auth_session = db_session.scalar(select(AuthSession))
    assert auth_session is not None
    assert auth_session.revoked_at is not None

    replay = client.get("/api/auth/session", headers={"Authorization": f"Bearer {token}"})
    assert replay.status_code == 401
    assert any(
        event["event_type"] == "auth.session_changed" and event["payload"]["change"] == "SIGNED_OUT"
        for event in events.published_events
    )


def test_update_profile_changes_full_name(client: TestClient) -> None:
    _sign_up(client)
    client.post("/api/auth/sign-in", json={"email": "ada@example.com", "password": "secret-pass"})

    response = client.patch("/api/auth/profile", json={"full_name": "  Ada King  "})
    assert response.status_code == 200
    assert response.json()["full_name"] == "Ada King"
