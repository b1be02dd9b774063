from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.authz.api import ActorUser
from app.authz.models import Profile
from app.crm.models import (
    CRMActivity,
    CRMClient,
    CRMLead,
    CRMLeadStage,
    CRMNote,
    CRMTask,
)
from app.crm.schemas import (
    ActivityRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    NotificationRead,
    StageCreate,
    StageRead,
    StageUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)


logger = logging.getLogger("app.crm")

NOTE_ADDED_DESCRIPTIONS = {
    "lead": "Added a new note",
    "client": "Added a note",
}
NOTIFICATION_FEED_LIMIT = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _ilike_any(q: str, *columns: Any) -> Any:
    pattern = f"%{q}%"
    return or_(*(column.ilike(pattern) for column in columns))


class ActivityService:
    """Append-only activity timeline shared by leads, clients and tasks."""

    def log(
        self,
        session: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: uuid.UUID | None,
        activity_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> CRMActivity:
        activity = CRMActivity(
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            activity_type=activity_type,
            description=description,
            activity_metadata=metadata,
        )
        session.add(activity)
        session.commit()
        return activity

    def log_follow_up(
        self,
        session: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: uuid.UUID | None,
        activity_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        # Runs after the entity mutation has been committed; a failure here leaves that mutation in place.
        try:
            self.log(
                session,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                activity_type=activity_type,
                description=description,
                metadata=metadata,
            )
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "crm.activity_write_failed",
                extra={"entity_type": entity_type, "entity_id": str(entity_id), "error": str(exc)},
            )
            return False
        return True

    def list_for_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[ActivityRead]:
        rows = session.execute(
            select(CRMActivity, Profile.full_name)
            .outerjoin(Profile, CRMActivity.user_id == Profile.id)
            .where(and_(CRMActivity.entity_type == entity_type, CRMActivity.entity_id == entity_id))
            .order_by(CRMActivity.created_at.desc())
        ).all()
        return [
            ActivityRead(
                id=activity.id,
                entity_type=activity.entity_type,
                entity_id=activity.entity_id,
                activity_type=activity.activity_type,
                description=activity.description,
                user_id=activity.user_id,
                user_name=full_name,
                metadata=activity.activity_metadata,
                created_at=activity.created_at,
            )
            for activity, full_name in rows
        ]


class StageService:
    entity_type = "crm.stage"

    def list_stages(self, session: Session) -> list[StageRead]:
        stages = session.scalars(
            select(CRMLeadStage).order_by(CRMLeadStage.order_index.asc(), CRMLeadStage.created_at.asc())
        ).all()
        return [StageRead.model_validate(stage) for stage in stages]

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMLeadStage:
        stage = session.scalar(select(CRMLeadStage).where(CRMLeadStage.id == stage_id))
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        return stage

    def create_stage(self, session: Session, actor_user: ActorUser, dto: StageCreate) -> StageRead:
        stage = CRMLeadStage(name=dto.name.strip(), color=dto.color, order_index=dto.order_index)
        session.add(stage)
        session.commit()
        session.refresh(stage)
        stage_read = StageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=_dump(stage_read),
        )
        return stage_read

    def update_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID, dto: StageUpdate) -> StageRead:
        stage = self.get_stage(session, stage_id)
        before = _dump(StageRead.model_validate(stage))
        for field_name, value in dto.model_dump(exclude_unset=True).items():
            if field_name == "name" and value is not None:
                value = value.strip()
            setattr(stage, field_name, value)
        session.commit()
        session.refresh(stage)
        stage_read = StageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="update",
            before=before,
            after=_dump(stage_read),
        )
        return stage_read

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        stage = self.get_stage(session, stage_id)
        before = _dump(StageRead.model_validate(stage))
        session.execute(update(CRMLead).where(CRMLead.stage_id == stage.id).values(stage_id=None))
        session.delete(stage)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage_id),
            action="delete",
            before=before,
            after=None,
        )


class LeadService:
    entity_type = "crm.lead"

    def list_leads(self, session: Session, filters: dict[str, Any]) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead)
        if filters.get("status"):
            stmt = stmt.where(CRMLead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(CRMLead.source == filters["source"])
        if filters.get("stage_id"):
            stmt = stmt.where(CRMLead.stage_id == filters["stage_id"])
        if filters.get("assigned_user_id"):
            stmt = stmt.where(CRMLead.assigned_user_id == filters["assigned_user_id"])
        if filters.get("q"):
            stmt = stmt.where(
                _ilike_any(str(filters["q"]), CRMLead.name, CRMLead.email, CRMLead.phone, CRMLead.company)
            )
        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc())).all()
        return [LeadRead.model_validate(lead) for lead in leads]

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get(session, lead_id))

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if dto.stage_id is not None:
            stage_service.get_stage(session, dto.stage_id)
        lead = CRMLead(
            name=dto.name.strip(),
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            source=dto.source,
            status=dto.status,
            stage_id=dto.stage_id,
            assigned_user_id=dto.assigned_user_id,
            created_by=actor_user.user_uuid,
        )
        session.add(lead)
        session.commit()
        session.refresh(lead)
        lead_read = LeadRead.model_validate(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=_dump(lead_read),
        )
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {"lead_id": str(lead.id), "status": lead.status},
            )
        )
        activity_service.log_follow_up(
            session,
            entity_type="lead",
            entity_id=lead.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Lead created",
        )
        return lead_read

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get(session, lead_id)
        before = _dump(LeadRead.model_validate(lead))
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("stage_id") is not None:
            stage_service.get_stage(session, changes["stage_id"])
        for field_name, value in changes.items():
            if field_name == "email" and value is not None:
                value = str(value)
            if field_name == "name" and value is not None:
                value = value.strip()
            setattr(lead, field_name, value)
        session.commit()
        session.refresh(lead)
        lead_read = LeadRead.model_validate(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=_dump(lead_read),
        )
        activity_service.log_follow_up(
            session,
            entity_type="lead",
            entity_id=lead.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Lead updated",
        )
        return lead_read

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get(session, lead_id)
        before = _dump(LeadRead.model_validate(lead))
        session.delete(lead)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
        )

    def set_stage(self, session: Session, lead_id: uuid.UUID, stage_id: uuid.UUID) -> LeadRead:
        lead = self._get(session, lead_id)
        lead.stage_id = stage_id
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def _get(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(CRMLead.id == lead_id))
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead


class ClientService:
    entity_type = "crm.client"

    def list_clients(self, session: Session, filters: dict[str, Any]) -> list[ClientRead]:
        stmt: Select[tuple[CRMClient]] = select(CRMClient)
        if filters.get("status"):
            stmt = stmt.where(CRMClient.status == filters["status"])
        if filters.get("assigned_user_id"):
            stmt = stmt.where(CRMClient.assigned_user_id == filters["assigned_user_id"])
        if filters.get("q"):
            stmt = stmt.where(
                _ilike_any(str(filters["q"]), CRMClient.name, CRMClient.company, CRMClient.email, CRMClient.phone)
            )
        clients = session.scalars(stmt.order_by(CRMClient.created_at.desc())).all()
        return [ClientRead.model_validate(client) for client in clients]

    def get_client(self, session: Session, client_id: uuid.UUID) -> ClientRead:
        return ClientRead.model_validate(self._get(session, client_id))

    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        client = CRMClient(
            name=dto.name.strip(),
            company=dto.company,
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            address=dto.address,
            status=dto.status,
            assigned_user_id=dto.assigned_user_id,
            notes=dto.notes,
            created_by=actor_user.user_uuid,
        )
        session.add(client)
        session.commit()
        session.refresh(client)
        client_read = ClientRead.model_validate(client)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="create",
            before=None,
            after=_dump(client_read),
        )
        activity_service.log_follow_up(
            session,
            entity_type="client",
            entity_id=client.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Client created",
        )
        return client_read

    def update_client(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        dto: ClientUpdate,
    ) -> ClientRead:
        client = self._get(session, client_id)
        before = _dump(ClientRead.model_validate(client))
        for field_name, value in dto.model_dump(exclude_unset=True).items():
            if field_name == "email" and value is not None:
                value = str(value)
            setattr(client, field_name, value)
        session.commit()
        session.refresh(client)
        client_read = ClientRead.model_validate(client)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="update",
            before=before,
            after=_dump(client_read),
        )
        activity_service.log_follow_up(
            session,
            entity_type="client",
            entity_id=client.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Client updated",
        )
        return client_read

    def delete_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> None:
        client = self._get(session, client_id)
        before = _dump(ClientRead.model_validate(client))
        session.delete(client)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(client_id),
            action="delete",
            before=before,
            after=None,
        )

    def _get(self, session: Session, client_id: uuid.UUID) -> CRMClient:
        client = session.scalar(select(CRMClient).where(CRMClient.id == client_id))
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")
        return client


class NoteService:
    valid_entity_types = {"lead", "client"}

    def list_notes(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[NoteRead]:
        self._validate_entity(session, entity_type, entity_id)
        rows = session.execute(
            select(CRMNote, Profile.full_name)
            .outerjoin(Profile, CRMNote.user_id == Profile.id)
            .where(and_(CRMNote.entity_type == entity_type, CRMNote.entity_id == entity_id))
            .order_by(CRMNote.created_at.desc())
        ).all()
        return [self._to_read(note, full_name) for note, full_name in rows]

    def add_note(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        dto: NoteCreate,
    ) -> NoteRead:
        self._validate_entity(session, entity_type, entity_id)
        text = dto.note.strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="note must not be empty")
        note = CRMNote(entity_type=entity_type, entity_id=entity_id, note=text, user_id=actor_user.user_uuid)
        session.add(note)
        session.commit()
        session.refresh(note)
        note_read = self._to_read(note, actor_user.full_name)
        activity_service.log_follow_up(
            session,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=actor_user.user_uuid,
            activity_type="note_added",
            description=NOTE_ADDED_DESCRIPTIONS[entity_type],
        )
        return note_read

    def delete_note(self, session: Session, actor_user: ActorUser, note_id: uuid.UUID) -> None:
        note = session.scalar(select(CRMNote).where(CRMNote.id == note_id))
        if note is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="note not found")
        if note.user_id != actor_user.user_uuid and "admin" not in actor_user.roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the author can delete this note")
        session.delete(note)
        session.commit()

    def _validate_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> None:
        if entity_type not in self.valid_entity_types:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity type")
        if entity_type == "lead":
            lead_service.get_lead(session, entity_id)
        else:
            client_service.get_client(session, entity_id)

    def _to_read(self, note: CRMNote, author_name: str | None) -> NoteRead:
        return NoteRead(
            id=note.id,
            entity_type=note.entity_type,
            entity_id=note.entity_id,
            note=note.note,
            user_id=note.user_id,
            author_name=author_name,
            created_at=note.created_at,
        )


class TaskService:
    entity_type = "crm.task"

    def list_tasks(self, session: Session, filters: dict[str, Any]) -> list[TaskRead]:
        stmt: Select[tuple[CRMTask]] = select(CRMTask)
        if filters.get("assigned_user_id"):
            stmt = stmt.where(CRMTask.assigned_user_id == filters["assigned_user_id"])
        if filters.get("lead_id"):
            stmt = stmt.where(CRMTask.lead_id == filters["lead_id"])
        if filters.get("client_id"):
            stmt = stmt.where(CRMTask.client_id == filters["client_id"])
        if filters.get("status"):
            stmt = stmt.where(CRMTask.status == filters["status"])
        if filters.get("priority"):
            stmt = stmt.where(CRMTask.priority == filters["priority"])
        # Due date ascending with undated tasks last.
        stmt = stmt.order_by(CRMTask.due_date.is_(None), CRMTask.due_date.asc(), CRMTask.created_at.asc())
        return [TaskRead.model_validate(task) for task in session.scalars(stmt).all()]

    def list_my_tasks(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[TaskRead]:
        return self.list_tasks(session, {**filters, "assigned_user_id": actor_user.user_uuid})

    def get_task(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(self._get(session, task_id))

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        if dto.lead_id is not None:
            lead_service.get_lead(session, dto.lead_id)
        if dto.client_id is not None:
            client_service.get_client(session, dto.client_id)
        task = CRMTask(
            title=dto.title.strip(),
            description=dto.description,
            due_date=dto.due_date,
            priority=dto.priority,
            status=dto.status,
            assigned_user_id=dto.assigned_user_id,
            lead_id=dto.lead_id,
            client_id=dto.client_id,
            created_by=actor_user.user_uuid,
            completed_at=utcnow() if dto.status == "completed" else None,
        )
        session.add(task)
        session.commit()
        session.refresh(task)
        task_read = TaskRead.model_validate(task)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="create",
            before=None,
            after=_dump(task_read),
        )
        activity_service.log_follow_up(
            session,
            entity_type="task",
            entity_id=task.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Task created",
        )
        return task_read

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._get(session, task_id)
        before = _dump(TaskRead.model_validate(task))
        changes = dto.model_dump(exclude_unset=True)
        for field_name, value in changes.items():
            setattr(task, field_name, value)
        if "status" in changes:
            self._sync_completed_at(task)
        session.commit()
        session.refresh(task)
        task_read = TaskRead.model_validate(task)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="update",
            before=before,
            after=_dump(task_read),
        )
        activity_service.log_follow_up(
            session,
            entity_type="task",
            entity_id=task.id,
            user_id=actor_user.user_uuid,
            activity_type="other",
            description="Task updated",
        )
        return task_read

    def toggle_completion(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = self._get(session, task_id)
        task.status = "pending" if task.status == "completed" else "completed"
        self._sync_completed_at(task)
        session.commit()
        session.refresh(task)
        activity_service.log_follow_up(
            session,
            entity_type="task",
            entity_id=task.id,
            user_id=actor_user.user_uuid,
            activity_type="status_change",
            description=f"Task marked as {task.status}",
        )
        return TaskRead.model_validate(task)

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = self._get(session, task_id)
        before = _dump(TaskRead.model_validate(task))
        session.delete(task)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task_id),
            action="delete",
            before=before,
            after=None,
        )

    def _sync_completed_at(self, task: CRMTask) -> None:
        if task.status == "completed":
            if task.completed_at is None:
                task.completed_at = utcnow()
        else:
            task.completed_at = None

    def _get(self, session: Session, task_id: uuid.UUID) -> CRMTask:
        task = session.scalar(select(CRMTask).where(CRMTask.id == task_id))
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return task


class NotificationFeedService:
    def list_notifications(self, session: Session, actor_user: ActorUser) -> list[NotificationRead]:
        tasks = session.scalars(
            select(CRMTask)
            .where(CRMTask.assigned_user_id == actor_user.user_uuid)
            .order_by(CRMTask.created_at.desc())
            .limit(NOTIFICATION_FEED_LIMIT)
        ).all()
        return [
            NotificationRead(
                id=task.id,
                title="New Task Assigned" if task.status == "pending" else "Task Updated",
                message=task.title,
                read=task.status == "completed",
                created_at=task.created_at,
                related_id=task.id,
            )
            for task in tasks
        ]


activity_service = ActivityService()
stage_service = StageService()
lead_service = LeadService()
client_service = ClientService()
note_service = NoteService()
task_service = TaskService()
notification_feed_service = NotificationFeedService()
