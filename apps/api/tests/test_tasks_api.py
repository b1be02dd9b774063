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
from app.authz.models import Profile, UserRole
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMActivity, CRMTask
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


def _create_task(client: TestClient, **overrides) -> dict:  # type: ignore[no-untyped-def]
    payload = {"title": "Follow up", "priority": "high"}
    payload.update(overrides)
    response = client.post("/api/crm/tasks", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_task_logs_activity_and_audit(client: TestClient, db_session: Session) -> None:
    task = _create_task(client, description="Call about pricing")

    assert task["status"] == "pending"
    assert task["priority"] == "high"
    assert task["completed_at"] is None
    assert any(entry["entity_type"] == "crm.task" and entry["action"] == "create" for entry in audit.audit_entries)

    activities = client.get(f"/api/crm/tasks/{task['id']}/activities")
    assert activities.status_code == 200
    assert [item["description"] for item in activities.json()] == ["Task created"]


def test_create_task_for_missing_lead_is_rejected(client: TestClient) -> None:
    response = client.post("/api/crm/tasks", json={"title": "Orphan", "lead_id": str(uuid.uuid4())})
    assert response.status_code == 404
    assert response.json()["code"] == "crm_task_create_failed"


def test_tasks_sort_by_due_date_with_undated_last(client: TestClient) -> None:
    now = datetime.now(timezone.utc)
    _create_task(client, title="Undated")
    _create_task(client, title="Later", due_date=(now + timedelta(days=3)).isoformat())
    _create_task(client, title="Sooner", due_date=(now + timedelta(days=1)).isoformat())

    response = client.get("/api/crm/tasks")
    assert response.status_code == 200
    assert [task["title"] for task in response.json()] == ["Sooner", "Later", "Undated"]


def test_task_filters_by_lead_status_and_priority(client: TestClient) -> None:
    lead = client.post("/api/crm/leads", json={"name": "Linked Lead"}).json()
    _create_task(client, title="Lead task", lead_id=lead["id"])
    _create_task(client, title="Low task", priority="low")
    _create_task(client, title="Done task", status="completed")

    by_lead = client.get("/api/crm/tasks", params={"lead_id": lead["id"]})
    assert [task["title"] for task in by_lead.json()] == ["Lead task"]

    by_priority = client.get("/api/crm/tasks", params={"priority": "low"})
    assert [task["title"] for task in by_priority.json()] == ["Low task"]

    by_status = client.get("/api/crm/tasks", params={"status": "completed"})
    assert [task["title"] for task in by_status.json()] == ["Done task"]
    assert by_status.json()[0]["completed_at"] is not None


def test_my_tasks_only_returns_assigned_tasks(
    client: TestClient,
    users: dict[str, SeededUser],
    acting_as: dict[str, str],
) -> None:
    _create_task(client, title="Mine", assigned_user_id=str(users["team_member"].id))
    _create_task(client, title="Someone else's", assigned_user_id=str(users["admin"].id))

    acting_as["role"] = "team_member"
    response = client.get("/api/crm/tasks/mine")
    assert response.status_code == 200
    assert [task["title"] for task in response.json()] == ["Mine"]


def test_toggle_completion_round_trip(client: TestClient, db_session: Session) -> None:
    task = _create_task(client)

    completed = client.post(f"/api/crm/tasks/{task['id']}/toggle")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    assert completed.json()["completed_at"] is not None

    reopened = client.post(f"/api/crm/tasks/{task['id']}/toggle")
    assert reopened.json()["status"] == "pending"
    assert reopened.json()["completed_at"] is None

    descriptions = set(
        db_session.scalars(
            select(CRMActivity.description).where(
                CRMActivity.entity_id == uuid.UUID(task["id"]),
                CRMActivity.activity_type == "status_change",
            )
        )
    )
    assert descriptions == {"Task marked as completed", "Task marked as pending"}


def test_update_task_syncs_completed_at(client: TestClient) -> None:
    task = _create_task(client)

    done = client.patch(f"/api/crm/tasks/{task['id']}", json={"status": "completed", "title": "Follow up today"})
    assert done.status_code == 200
    assert done.json()["title"] == "Follow up today"
    assert done.json()["completed_at"] is not None

    cancelled = client.patch(f"/api/crm/tasks/{task['id']}", json={"status": "cancelled"})
    assert cancelled.json()["completed_at"] is None


def test_delete_task(client: TestClient, db_session: Session) -> None:
    task = _create_task(client)

    assert client.delete(f"/api/crm/tasks/{task['id']}").status_code == 204
    assert db_session.scalar(select(CRMTask).where(CRMTask.id == uuid.UUID(task["id"]))) is None
    assert client.get(f"/api/crm/tasks/{task['id']}").status_code == 404


def test_notifications_list_latest_assigned_tasks(
    client: TestClient,
    users: dict[str, SeededUser],
    acting_as: dict[str, str],
) -> None:
    member_id = str(users["team_member"].id)
    for index in range(12):
        _create_task(client, title=f"Task {index}", assigned_user_id=member_id)
    done = _create_task(client, title="Finished", assigned_user_id=member_id, status="completed")

    acting_as["role"] = "team_member"
    response = client.get("/api/crm/notifications")
    assert response.status_code == 200
    body = response.json()
    assert len(body) == 10
    assert body[0]["related_id"] == done["id"]
    assert body[0]["title"] == "Task Updated"
    assert body[0]["read"] is True
    assert body[1]["title"] == "New Task Assigned"
    assert body[1]["message"] == "Task 11"
    assert all(item["type"] == "task" for item in body)
