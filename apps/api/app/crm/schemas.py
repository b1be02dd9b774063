from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


LeadStatus = Literal["new", "contacted", "in_progress", "converted", "lost"]
LeadSource = Literal["website", "referral", "social_media", "email", "phone", "other"]
ClientStatus = Literal["active", "inactive", "prospect", "former"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
TaskStatus = Literal["pending", "in_progress", "completed", "cancelled"]
ActivityType = Literal[
    "status_change",
    "assignment",
    "note_added",
    "email_sent",
    "call_made",
    "meeting_scheduled",
    "other",
]
NoticeKind = Literal["success", "error", "warning", "info"]


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    color: str | None = None
    order_index: int = Field(ge=0)


class StageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    color: str | None = None
    order_index: int | None = Field(default=None, ge=0)


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str | None
    order_index: int
    created_at: datetime


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    source: LeadSource = "other"
    status: LeadStatus = "new"
    stage_id: UUID | None = None
    assigned_user_id: UUID | None = None


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    source: LeadSource | None = None
    status: LeadStatus | None = None
    stage_id: UUID | None = None
    assigned_user_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    company: str | None
    source: str
    status: str
    stage_id: UUID | None
    assigned_user_id: UUID | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    status: ClientStatus = "active"
    assigned_user_id: UUID | None = None
    notes: str | None = None


class ClientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    status: ClientStatus | None = None
    assigned_user_id: UUID | None = None
    notes: str | None = None


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company: str | None
    email: str | None
    phone: str | None
    address: str | None
    status: str
    assigned_user_id: UUID | None
    notes: str | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    priority: TaskPriority = "medium"
    status: TaskStatus = "pending"
    assigned_user_id: UUID | None = None
    lead_id: UUID | None = None
    client_id: UUID | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    assigned_user_id: UUID | None = None
    lead_id: UUID | None = None
    client_id: UUID | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    due_date: datetime | None
    priority: str
    status: str
    assigned_user_id: UUID | None
    lead_id: UUID | None
    client_id: UUID | None
    created_by: UUID | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class NoteCreate(BaseModel):
    note: str = Field(min_length=1)


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    note: str
    user_id: UUID
    author_name: str | None = None
    created_at: datetime


class ActivityRead(BaseModel):
    id: UUID
    entity_type: str
    entity_id: UUID
    activity_type: ActivityType
    description: str
    user_id: UUID | None
    user_name: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


class Notice(BaseModel):
    kind: NoticeKind
    message: str


class BoardColumn(BaseModel):
    stage: StageRead
    leads: list[LeadRead]


class BoardRead(BaseModel):
    columns: list[BoardColumn]
    unstaged_lead_ids: list[UUID] = Field(default_factory=list)
    notices: list[Notice] = Field(default_factory=list)


class MoveLeadRequest(BaseModel):
    lead_id: UUID
    stage_id: UUID


class MoveLeadResponse(BaseModel):
    outcome: Literal["moved", "failed", "skipped"]
    lead_id: UUID | None = None
    stage_id: UUID | None = None
    board: BoardRead | None = None
    notices: list[Notice] = Field(default_factory=list)


class NotificationRead(BaseModel):
    id: UUID
    title: str
    message: str
    type: Literal["task"] = "task"
    read: bool
    created_at: datetime
    related_id: UUID


class ReportFilters(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    status: str | None = None
    source: str | None = None
