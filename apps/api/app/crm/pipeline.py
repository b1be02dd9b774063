"""Kanban board over the lead pipeline.

The board owns the ordered stage list for one mount and a single nullable drag
selection. A drop writes the lead's new stage first and, only when that write
succeeds, appends one ``status_change`` activity naming the destination stage.
The caller's reload hook runs after a successful move; the board never edits
its own copy of the leads.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum
from typing import Any, Protocol, TypeVar

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app import events
from app.crm.notifications import NotificationSink
from app.crm.schemas import StageRead
from app.crm.service import ActivityService, LeadService, StageService, activity_service, lead_service, stage_service
from app.metrics import observe_pipeline_move


logger = logging.getLogger("app.crm.pipeline")
tracer = trace.get_tracer("app.crm.pipeline")

MOVE_SUCCEEDED_MESSAGE = "Lead moved successfully"
MOVE_FAILED_MESSAGE = "Failed to move lead"
STAGES_FAILED_MESSAGE = "Failed to load pipeline stages"
ACTIVITY_FAILED_MESSAGE = "Lead moved, but its activity could not be recorded"


class StagedLead(Protocol):
    id: uuid.UUID
    stage_id: uuid.UUID | None


LeadT = TypeVar("LeadT", bound=StagedLead)
ReloadHook = Callable[[], Awaitable[None] | None]


class MoveOutcome(StrEnum):
    MOVED = "moved"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineStore(Protocol):
    async def list_stages(self) -> list[StageRead]:
        ...

    async def set_lead_stage(self, lead_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        ...

    async def record_move(
        self,
        lead_id: uuid.UUID,
        user_id: uuid.UUID | None,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        ...


class DbPipelineStore:
    def __init__(
        self,
        db: Session,
        *,
        stages: StageService = stage_service,
        leads: LeadService = lead_service,
        activities: ActivityService = activity_service,
    ) -> None:
        self._db = db
        self._stages = stages
        self._leads = leads
        self._activities = activities

    async def list_stages(self) -> list[StageRead]:
        return await run_in_threadpool(self._stages.list_stages, self._db)

    async def set_lead_stage(self, lead_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        await run_in_threadpool(self._leads.set_stage, self._db, lead_id, stage_id)

    async def record_move(
        self,
        lead_id: uuid.UUID,
        user_id: uuid.UUID | None,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        await run_in_threadpool(self._log_move, lead_id, user_id, description, metadata)

    def _log_move(
        self,
        lead_id: uuid.UUID,
        user_id: uuid.UUID | None,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            self._activities.log(
                self._db,
                entity_type="lead",
                entity_id=lead_id,
                user_id=user_id,
                activity_type="status_change",
                description=description,
                metadata=metadata,
            )
        except SQLAlchemyError:
            self._db.rollback()
            raise


class PipelineBoard:
    def __init__(
        self,
        store: PipelineStore,
        notifier: NotificationSink,
        *,
        actor_user_id: uuid.UUID | None = None,
        on_update: ReloadHook | None = None,
    ) -> None:
        self.stages: list[StageRead] = []
        self.dragged_lead_id: uuid.UUID | None = None
        self._store = store
        self._notifier = notifier
        self._actor_user_id = actor_user_id
        self._on_update = on_update
        self._mounted = False

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    async def mount(self) -> list[StageRead]:
        self._mounted = True
        try:
            stages = await self._store.list_stages()
        except Exception as exc:
            logger.error("pipeline.stages_load_failed", extra={"error": str(exc)})
            if self._mounted:
                self.stages = []
                self._notifier.notify("error", STAGES_FAILED_MESSAGE)
            return self.stages

        if self._mounted:
            self.stages = sorted(stages, key=lambda stage: stage.order_index)
        return self.stages

    def unmount(self) -> None:
        self._mounted = False
        self.dragged_lead_id = None

    async def __aenter__(self) -> PipelineBoard:
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unmount()

    def columns(self, leads: Sequence[LeadT]) -> list[tuple[StageRead, list[LeadT]]]:
        grouped: dict[uuid.UUID, list[LeadT]] = {stage.id: [] for stage in self.stages}
        for lead in leads:
            if lead.stage_id in grouped:
                grouped[lead.stage_id].append(lead)
        return [(stage, grouped[stage.id]) for stage in self.stages]

    def unstaged_lead_ids(self, leads: Sequence[StagedLead]) -> list[uuid.UUID]:
        known = {stage.id for stage in self.stages}
        orphaned = [lead.id for lead in leads if lead.stage_id not in known]
        if orphaned:
            logger.warning(
                "pipeline.unstaged_leads",
                extra={"lead_id": [str(lead_id) for lead_id in orphaned]},
            )
        return orphaned

    def drag_start(self, lead_id: uuid.UUID) -> None:
        self.dragged_lead_id = lead_id

    async def drop(self, stage_id: uuid.UUID) -> MoveOutcome:
        lead_id = self.dragged_lead_id
        try:
            if lead_id is None:
                return MoveOutcome.SKIPPED
            with tracer.start_as_current_span("crm.pipeline.move") as span:
                span.set_attribute("lead_id", str(lead_id))
                span.set_attribute("stage_id", str(stage_id))
                outcome = await self._move(lead_id, stage_id)
                span.set_attribute("outcome", outcome.value)
            observe_pipeline_move(outcome.value)
            return outcome
        finally:
            self.dragged_lead_id = None

    async def _move(self, lead_id: uuid.UUID, stage_id: uuid.UUID) -> MoveOutcome:
        stage = next((item for item in self.stages if item.id == stage_id), None)
        if stage is None:
            logger.warning("pipeline.unknown_stage", extra={"lead_id": str(lead_id), "stage_id": str(stage_id)})
            self._notify("error", MOVE_FAILED_MESSAGE)
            return MoveOutcome.FAILED

        try:
            await self._store.set_lead_stage(lead_id, stage_id)
        except Exception as exc:
            logger.error(
                "pipeline.move_failed",
                extra={"lead_id": str(lead_id), "stage_id": str(stage_id), "error": str(exc)},
            )
            self._notify("error", MOVE_FAILED_MESSAGE)
            return MoveOutcome.FAILED

        logged = True
        try:
            await self._store.record_move(
                lead_id,
                self._actor_user_id,
                f"Lead moved to {stage.name}",
                {"stage_id": str(stage.id), "stage_name": stage.name},
            )
        except Exception as exc:
            logged = False
            logger.error(
                "pipeline.activity_write_failed",
                extra={"lead_id": str(lead_id), "stage_id": str(stage_id), "error": str(exc)},
            )

        events.publish(
            events.build_envelope(
                "crm.lead.stage_changed",
                str(self._actor_user_id) if self._actor_user_id else None,
                {"lead_id": str(lead_id), "stage_id": str(stage_id), "logged": logged},
            )
        )
        logger.info("pipeline.lead_moved", extra={"lead_id": str(lead_id), "stage_id": str(stage_id)})

        if not self._mounted:
            return MoveOutcome.MOVED
        if logged:
            self._notify("success", MOVE_SUCCEEDED_MESSAGE)
        else:
            self._notify("warning", ACTIVITY_FAILED_MESSAGE)
        if self._on_update is not None:
            result = self._on_update()
            if inspect.isawaitable(result):
                await result
        return MoveOutcome.MOVED

    def _notify(self, kind: str, message: str) -> None:
        if self._mounted:
            self._notifier.notify(kind, message)  # type: ignore[arg-type]
