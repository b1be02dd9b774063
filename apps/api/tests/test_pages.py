from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import Profile, UserRole
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.security import hash_password
from app.crm.models import CRMLead, CRMLeadStage, CRMTask
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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _sign_in_as(client: TestClient, db: Session, role: str) -> Profile:
    profile = Profile(
        email=f"{role}@example.com",
        full_name=f"{role.replace('_', ' ').title()}",
        password_hash=hash_password("secret-pass"),
    )
    db.add(profile)
    db.flush()
    db.add(UserRole(user_id=profile.id, role=role))
    db.commit()
    response = client.post("/api/auth/sign-in", json={"email": profile.email, "password": "secret-pass"})
    assert response.status_code == 200
    return profile


def test_protected_page_redirects_to_sign_in_without_session(client: TestClient) -> None:
    for path in ("/", "/leads", "/clients", "/tasks", "/reports", "/settings", "/users"):
        response = client.get(path, follow_redirects=False)
        assert response.status_code == 303, path
        assert response.headers["location"] == "/auth"


def test_auth_page_is_public_and_redirects_signed_in_users(client: TestClient, db_session: Session) -> None:
    anonymous = client.get("/auth")
    assert anonymous.status_code == 200
    assert anonymous.json()["view"] == "auth"

    _sign_in_as(client, db_session, "team_member")
    signed_in = client.get("/auth", follow_redirects=False)
    assert signed_in.status_code == 303
    assert signed_in.headers["location"] == "/"


def test_team_member_is_denied_admin_page(client: TestClient, db_session: Session) -> None:
    _sign_in_as(client, db_session, "team_member")

    response = client.get("/users", follow_redirects=False)
    assert response.status_code == 403
    assert response.json() == {
        "view": "access_denied",
        "title": "Access Denied",
        "message": "You don't have permission to view this page.",
    }


def test_admin_sees_users_page(client: TestClient, db_session: Session) -> None:
    _sign_in_as(client, db_session, "admin")

    response = client.get("/users")
    assert response.status_code == 200
    body = response.json()
    assert body["view"] == "users"
    assert [user["email"] for user in body["users"]] == ["admin@example.com"]
    assert body["notices"] == []


def test_dashboard_shows_stats_and_notifications(client: TestClient, db_session: Session) -> None:
    profile = _sign_in_as(client, db_session, "manager")
    db_session.add(CRMTask(title="Prepare proposal", assigned_user_id=profile.id))
    db_session.commit()

    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["view"] == "dashboard"
    assert body["user"]["email"] == "manager@example.com"
    assert body["stats"]["managers"] == 1
    assert [item["message"] for item in body["notifications"]] == ["Prepare proposal"]


def test_leads_page_includes_board(client: TestClient, db_session: Session) -> None:
    _sign_in_as(client, db_session, "team_member")
    stage = CRMLeadStage(name="New", order_index=0)
    db_session.add(stage)
    db_session.flush()
    db_session.add(CRMLead(name="Board Lead", stage_id=stage.id))
    db_session.commit()

    response = client.get("/leads")
    assert response.status_code == 200
    body = response.json()
    assert body["view"] == "leads"
    assert [column["stage"]["name"] for column in body["board"]["columns"]] == ["New"]
    assert [lead["name"] for lead in body["board"]["columns"][0]["leads"]] == ["Board Lead"]
    assert body["board"]["unstaged_lead_ids"] == []


def test_missing_lead_detail_degrades_with_error_notice(client: TestClient, db_session: Session) -> None:
    _sign_in_as(client, db_session, "team_member")

    response = client.get("/leads/00000000-0000-4000-8000-000000000000")
    assert response.status_code == 200
    body = response.json()
    assert body["lead"] is None
    assert body["notices"] == [{"kind": "error", "message": "Failed to fetch lead details"}]


def test_sign_out_sends_next_page_load_to_sign_in(client: TestClient, db_session: Session) -> None:
    _sign_in_as(client, db_session, "team_member")
    assert client.get("/tasks").status_code == 200

    client.post("/api/auth/sign-out")
    response = client.get("/tasks", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/auth"


def test_unknown_route_renders_not_found_view(client: TestClient) -> None:
    response = client.get("/no/such/page")
    assert response.status_code == 404
    assert response.json()["view"] == "not_found"


def test_request_log_carries_signed_in_user(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    profile = _sign_in_as(client, db_session, "team_member")
    caplog.set_level(logging.INFO, logger="app.request")

    assert client.patch("/api/auth/profile", json={"full_name": "Renamed Member"}).status_code == 200

    assert any(
        record.getMessage() == "http.request"
        and getattr(record, "path", None) == "/api/auth/profile"
        and getattr(record, "user_id", None) == str(profile.id)
        for record in caplog.records
    )


@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
def test_unknown_route_renders_not_found_view_for_any_method(client: TestClient, method: str) -> None:
    response = client.request(method, "/no/such/page")
    assert response.status_code == 404
    assert response.json()["view"] == "not_found"
