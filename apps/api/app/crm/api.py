from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.authz.api import ActorUser, ensure_any_role, get_current_user
from app.context import get_correlation_id
from app.core.database import get_db
from app.crm.notifications import CollectingNotificationSink, NotificationSink
from app.crm.pipeline import DbPipelineStore, PipelineBoard
from app.crm.reports import CsvReport, report_service
from app.crm.schemas import (
    ActivityRead,
    BoardColumn,
    BoardRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    MoveLeadRequest,
    MoveLeadResponse,
    NoteCreate,
    NoteRead,
    NotificationRead,
    ReportFilters,
    StageCreate,
    StageRead,
    StageUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.crm.service import (
    activity_service,
    client_service,
    lead_service,
    note_service,
    notification_feed_service,
    stage_service,
    task_service,
)
from app.metrics import observe_csv_export

logger = logging.getLogger("app.crm.api")

stages_router = APIRouter(prefix="/api/crm", tags=["crm.stages"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
clients_router = APIRouter(prefix="/api/crm", tags=["crm.clients"])
notes_router = APIRouter(prefix="/api/crm", tags=["crm.notes"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
pipeline_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline"])
reports_router = APIRouter(prefix="/api/crm", tags=["crm.reports"])
notifications_router = APIRouter(prefix="/api/crm", tags=["crm.notifications"])

MANAGER_ROLES = ("admin", "manager")
LEADS_LOAD_FAILED_MESSAGE = "Failed to load leads"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _csv_response(name: str, report: CsvReport) -> Response:
    observe_csv_export(name, report.row_count)
    logger.info("reports.exported", extra={"report": name, "row_count": report.row_count})
    return Response(
        content=report.content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{report.filename}"'},
    )


async def load_board_leads(db: Session, notifier: NotificationSink) -> list[LeadRead]:
    try:
        return await run_in_threadpool(lead_service.list_leads, db, {})
    except SQLAlchemyError:
        db.rollback()
        notifier.notify("error", LEADS_LOAD_FAILED_MESSAGE)
        return []


def build_board_read(board: PipelineBoard, leads: list[LeadRead], sink: CollectingNotificationSink) -> BoardRead:
    return BoardRead(
        columns=[BoardColumn(stage=stage, leads=items) for stage, items in board.columns(leads)],
        unstaged_lead_ids=board.unstaged_lead_ids(leads),
        notices=list(sink.notices),
    )


@stages_router.get("/stages", response_model=list[StageRead])
def list_stages(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[StageRead]:
    return stage_service.list_stages(db)


@stages_router.post("/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        ensure_any_role(user, *MANAGER_ROLES)
        return stage_service.create_stage(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_create_failed")


@stages_router.patch("/stages/{stage_id}", response_model=StageRead)
def update_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        ensure_any_role(user, *MANAGER_ROLES)
        return stage_service.update_stage(db, user, stage_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_update_failed")


@stages_router.delete("/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        ensure_any_role(user, *MANAGER_ROLES)
        stage_service.delete_stage(db, user, stage_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_delete_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    q: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    assigned_user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[LeadRead]:
    return lead_service.list_leads(
        db,
        filters={
            "q": q,
            "status": status_filter,
            "source": source,
            "stage_id": stage_id,
            "assigned_user_id": assigned_user_id,
        },
    )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        ensure_any_role(user, *MANAGER_ROLES)
        lead_service.delete_lead(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_delete_failed")


@leads_router.get("/leads/{lead_id}/activities", response_model=list[ActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        lead_service.get_lead(db, lead_id)
        return activity_service.list_for_entity(db, "lead", lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_activities_failed")


@leads_router.get("/leads/{lead_id}/notes", response_model=list[NoteRead])
def list_lead_notes(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        return note_service.list_notes(db, "lead", lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_notes_failed")


@leads_router.post("/leads/{lead_id}/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def add_lead_note(
    request: Request,
    lead_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.add_note(db, user, "lead", lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_note_create_failed")


@clients_router.get("/clients", response_model=list[ClientRead])
def list_clients(
    q: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ClientRead]:
    return client_service.list_clients(
        db,
        filters={"q": q, "status": status_filter, "assigned_user_id": assigned_user_id},
    )


@clients_router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_create_failed")


@clients_router.get("/clients/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_get_failed")


@clients_router.patch("/clients/{client_id}", response_model=ClientRead)
def patch_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_client(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_update_failed")


@clients_router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        ensure_any_role(user, *MANAGER_ROLES)
        client_service.delete_client(db, user, client_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_delete_failed")


@clients_router.get("/clients/{client_id}/activities", response_model=list[ActivityRead])
def list_client_activities(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        client_service.get_client(db, client_id)
        return activity_service.list_for_entity(db, "client", client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_activities_failed")


@clients_router.get("/clients/{client_id}/notes", response_model=list[NoteRead])
def list_client_notes(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        return note_service.list_notes(db, "client", client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_notes_failed")


@clients_router.post("/clients/{client_id}/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def add_client_note(
    request: Request,
    client_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.add_note(db, user, "client", client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_note_create_failed")


@notes_router.delete("/notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    request: Request,
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        note_service.delete_note(db, user, note_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_note_delete_failed")


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    lead_id: uuid.UUID | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    assigned_user_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[TaskRead]:
    return task_service.list_tasks(
        db,
        filters={
            "lead_id": lead_id,
            "client_id": client_id,
            "assigned_user_id": assigned_user_id,
            "status": status_filter,
            "priority": priority,
        },
    )


@tasks_router.get("/tasks/mine", response_model=list[TaskRead])
def list_my_tasks(
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead]:
    return task_service.list_my_tasks(db, user, filters={"status": status_filter, "priority": priority})


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_create_failed")


@tasks_router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.get_task(db, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_get_failed")


@tasks_router.patch("/tasks/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_update_failed")


@tasks_router.post("/tasks/{task_id}/toggle", response_model=TaskRead)
def toggle_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.toggle_completion(db, user, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_toggle_failed")


@tasks_router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        task_service.delete_task(db, user, task_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_delete_failed")


@tasks_router.get("/tasks/{task_id}/activities", response_model=list[ActivityRead])
def list_task_activities(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        task_service.get_task(db, task_id)
        return activity_service.list_for_entity(db, "task", task_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_task_activities_failed")


@pipeline_router.get("/pipeline/board", response_model=BoardRead)
async def get_board(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead:
    sink = CollectingNotificationSink()
    async with PipelineBoard(DbPipelineStore(db), sink, actor_user_id=user.user_uuid) as board:
        leads = await load_board_leads(db, sink)
        return build_board_read(board, leads, sink)


@pipeline_router.post("/pipeline/moves", response_model=MoveLeadResponse)
async def move_lead(
    dto: MoveLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MoveLeadResponse:
    sink = CollectingNotificationSink()
    reloaded: list[LeadRead] = []

    async def reload_leads() -> None:
        reloaded[:] = await load_board_leads(db, sink)

    board = PipelineBoard(DbPipelineStore(db), sink, actor_user_id=user.user_uuid, on_update=reload_leads)
    async with board:
        board.drag_start(dto.lead_id)
        outcome = await board.drop(dto.stage_id)
        snapshot = build_board_read(board, reloaded, sink) if outcome == "moved" else None

    return MoveLeadResponse(
        outcome=outcome.value,
        lead_id=dto.lead_id,
        stage_id=dto.stage_id,
        board=snapshot,
        notices=list(sink.notices),
    )


@reports_router.get("/reports/summary")
def get_report_summary(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> dict[str, int]:
    filters = ReportFilters(start_date=start_date, end_date=end_date, status=status_filter, source=source)
    return report_service.summary(db, filters)


@reports_router.get("/reports/leads.csv")
def export_leads_report(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> Response:
    filters = ReportFilters(start_date=start_date, end_date=end_date, status=status_filter, source=source)
    return _csv_response("leads", report_service.leads_report(db, filters))


@reports_router.get("/reports/clients.csv")
def export_clients_report(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> Response:
    return _csv_response("clients", report_service.clients_report(db))


@reports_router.get("/reports/tasks.csv")
def export_tasks_report(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> Response:
    return _csv_response("tasks", report_service.tasks_report(db))


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead]:
    return notification_feed_service.list_notifications(db, user)
