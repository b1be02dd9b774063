"""Guarded page endpoints.

Each protected page runs a :class:`SessionGuard` before loading its data and
answers with a JSON view payload. A guard that redirects becomes a ``303`` to
the sign-in path; a denial becomes the access-denied view. Data reads that fail
degrade to empty values plus an error notice.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.authz.api import ActorUser
from app.authz.errors import AccessDenied, SignInRequired
from app.authz.guard import DbSessionBackend, GuardState, SessionGuard
from app.authz.service import ResolvedSession, identity_service, user_admin_service
from app.context import bind_session
from app.core.auth import extract_session_token
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.api import build_board_read, load_board_leads
from app.crm.notifications import CollectingNotificationSink
from app.crm.pipeline import DbPipelineStore, PipelineBoard
from app.crm.reports import report_service
from app.crm.schemas import ReportFilters
from app.crm.service import (
    activity_service,
    client_service,
    lead_service,
    note_service,
    notification_feed_service,
    task_service,
)


logger = logging.getLogger("app.web.pages")

pages_router = APIRouter(tags=["pages"])

T = TypeVar("T")

ACCESS_DENIED_VIEW = {
    "view": "access_denied",
    "title": "Access Denied",
    "message": "You don't have permission to view this page.",
}
NOT_FOUND_VIEW = {
    "view": "not_found",
    "title": "404",
    "message": "Oops! Page not found",
}
CATCH_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def guarded_page(*roles: str) -> Callable[..., Awaitable[ResolvedSession]]:
    async def dependency(request: Request, db: Session = Depends(get_db)) -> ResolvedSession:
        backend = DbSessionBackend(db, extract_session_token(request))
        async with SessionGuard(backend, roles or None) as guard:
            if guard.state is GuardState.DENIED:
                raise AccessDenied(guard.required_roles)
            if guard.state is not GuardState.AUTHORIZED or guard.session is None:
                raise SignInRequired()
            bind_session(request, str(guard.session.user_id), str(guard.session.session_id))
            return guard.session

    return dependency


async def _read(
    db: Session,
    sink: CollectingNotificationSink,
    message: str,
    default: T,
    loader: Callable[..., T],
    *args: Any,
) -> T:
    try:
        return await run_in_threadpool(loader, db, *args)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("page.read_failed", extra={"error": str(exc)})
        sink.notify("error", message)
        return default


async def _read_entity(
    db: Session,
    sink: CollectingNotificationSink,
    message: str,
    loader: Callable[..., T],
    entity_id: uuid.UUID,
) -> T | None:
    try:
        return await _read(db, sink, message, None, loader, entity_id)
    except HTTPException:
        sink.notify("error", message)
        return None


def _view(view: str, sink: CollectingNotificationSink, **data: Any) -> dict[str, Any]:
    return {"view": view, **data, "notices": [notice.model_dump() for notice in sink.notices]}


def _dump_all(items: list[Any]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


@pages_router.get("/auth")
async def auth_page(request: Request, db: Session = Depends(get_db)) -> Any:
    session = await run_in_threadpool(identity_service.resolve_session, db, extract_session_token(request))
    if session is not None:
        return RedirectResponse("/", status_code=status.HTTP_303_SEE_OTHER)
    return {"view": "auth", "title": "Sign in"}


@pages_router.get("/")
async def dashboard_page(
    db: Session = Depends(get_db),
    session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    stats = await _read(db, sink, "Failed to load dashboard statistics", None, user_admin_service.role_stats)
    actor = _actor_for(session)
    notifications = await _read(
        db, sink, "Failed to load notifications", [], notification_feed_service.list_notifications, actor
    )
    return _view(
        "dashboard",
        sink,
        user={"id": str(session.user_id), "email": session.email, "full_name": session.full_name},
        stats=stats.model_dump() if stats is not None else None,
        notifications=_dump_all(notifications),
    )


@pages_router.get("/leads")
async def leads_page(
    db: Session = Depends(get_db),
    session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    async with PipelineBoard(DbPipelineStore(db), sink, actor_user_id=session.user_id) as board:
        leads = await load_board_leads(db, sink)
        board_read = build_board_read(board, leads, sink)
    users = await _read(db, sink, "Failed to fetch users", [], user_admin_service.list_assignable_users)
    return _view(
        "leads",
        sink,
        leads=_dump_all(leads),
        board=board_read.model_dump(mode="json", exclude={"notices"}),
        users=_dump_all(users),
    )


@pages_router.get("/leads/{lead_id}")
async def lead_detail_page(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    _session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    lead = await _read_entity(db, sink, "Failed to fetch lead details", lead_service.get_lead, lead_id)
    if lead is None:
        return _view("lead_detail", sink, lead=None, notes=[], activities=[], tasks=[])
    notes = await _read(db, sink, "Failed to fetch notes", [], note_service.list_notes, "lead", lead_id)
    activities = await _read(
        db, sink, "Failed to fetch activities", [], activity_service.list_for_entity, "lead", lead_id
    )
    tasks = await _read(db, sink, "Failed to fetch tasks", [], task_service.list_tasks, {"lead_id": lead_id})
    return _view(
        "lead_detail",
        sink,
        lead=lead.model_dump(mode="json"),
        notes=_dump_all(notes),
        activities=_dump_all(activities),
        tasks=_dump_all(tasks),
    )


@pages_router.get("/clients")
async def clients_page(
    db: Session = Depends(get_db),
    _session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    clients = await _read(db, sink, "Failed to fetch clients", [], client_service.list_clients, {})
    return _view("clients", sink, clients=_dump_all(clients))


@pages_router.get("/clients/{client_id}")
async def client_detail_page(
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    _session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    client = await _read_entity(db, sink, "Failed to fetch client details", client_service.get_client, client_id)
    if client is None:
        return _view("client_detail", sink, client=None, notes=[], activities=[], tasks=[])
    notes = await _read(db, sink, "Failed to fetch notes", [], note_service.list_notes, "client", client_id)
    activities = await _read(
        db, sink, "Failed to fetch activities", [], activity_service.list_for_entity, "client", client_id
    )
    tasks = await _read(db, sink, "Failed to fetch tasks", [], task_service.list_tasks, {"client_id": client_id})
    return _view(
        "client_detail",
        sink,
        client=client.model_dump(mode="json"),
        notes=_dump_all(notes),
        activities=_dump_all(activities),
        tasks=_dump_all(tasks),
    )


@pages_router.get("/tasks")
async def tasks_page(
    db: Session = Depends(get_db),
    session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    tasks = await _read(db, sink, "Failed to fetch tasks", [], task_service.list_my_tasks, _actor_for(session), {})
    return _view("tasks", sink, tasks=_dump_all(tasks))


@pages_router.get("/reports")
async def reports_page(
    db: Session = Depends(get_db),
    _session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    summary = await _read(db, sink, "Failed to fetch data", None, report_service.summary, ReportFilters())
    return _view(
        "reports",
        sink,
        summary=summary,
        exports=["/api/crm/reports/leads.csv", "/api/crm/reports/clients.csv", "/api/crm/reports/tasks.csv"],
    )


@pages_router.get("/settings")
async def settings_page(
    db: Session = Depends(get_db),
    session: ResolvedSession = Depends(guarded_page()),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    profile = await _read_entity(db, sink, "Failed to load profile", identity_service.get_profile, session.user_id)
    return _view("settings", sink, profile=profile.model_dump(mode="json") if profile is not None else None)


@pages_router.get("/users")
async def users_page(
    db: Session = Depends(get_db),
    _session: ResolvedSession = Depends(guarded_page("admin")),
) -> dict[str, Any]:
    sink = CollectingNotificationSink()
    users = await _read(db, sink, "Failed to fetch users", [], user_admin_service.list_users)
    return _view("users", sink, users=_dump_all(users))


@pages_router.api_route("/{path:path}", methods=CATCH_ALL_METHODS, include_in_schema=False)
async def not_found_page(path: str) -> JSONResponse:
    logger.warning("page.not_found", extra={"path": f"/{path}"})
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=NOT_FOUND_VIEW)


def _actor_for(session: ResolvedSession) -> ActorUser:
    return ActorUser(
        user_id=str(session.user_id),
        session_id=str(session.session_id),
        email=session.email,
        full_name=session.full_name,
    )


async def _sign_in_redirect(request: Request, exc: SignInRequired) -> RedirectResponse:
    return RedirectResponse(get_settings().sign_in_path, status_code=status.HTTP_303_SEE_OTHER)


async def _access_denied(request: Request, exc: AccessDenied) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=ACCESS_DENIED_VIEW)


def register_page_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SignInRequired, _sign_in_redirect)  # type: ignore[arg-type]
    app.add_exception_handler(AccessDenied, _access_denied)  # type: ignore[arg-type]
