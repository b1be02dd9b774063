from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, selectinload

from app.crm.models import CRMClient, CRMLead, CRMTask
from app.crm.schemas import ReportFilters


LEADS_REPORT_HEADERS = ("Name", "Email", "Phone", "Company", "Source", "Status", "Stage", "Assigned To", "Created At")
CLIENTS_REPORT_HEADERS = ("Name", "Company", "Email", "Phone", "Status", "Assigned To", "Created At")
TASKS_REPORT_HEADERS = ("Title", "Description", "Status", "Priority", "Due Date", "Assigned To", "Created At")
UNASSIGNED = "Unassigned"


@dataclass
class CsvReport:
    filename: str
    content: str
    row_count: int


def header_key(header: str) -> str:
    return header.lower().replace(" ", "_")


def render_csv(headers: Sequence[str], rows: Iterable[Mapping[str, Any]]) -> str:
    """Quote every value unconditionally.

    Embedded double quotes are written as-is, so a value containing ``"`` yields
    a field that strict CSV readers will split differently.
    """
    lines = [",".join(headers)]
    keys = [header_key(header) for header in headers]
    for row in rows:
        lines.append(",".join(f'"{_cell(row.get(key))}"' for key in keys))
    return "\n".join(lines)


def report_filename(report_name: str, today: date | None = None) -> str:
    day = today or datetime.now(timezone.utc).date()
    return f"{report_name}_{day.isoformat()}.csv"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _day(value: datetime | None) -> str:
    return value.date().isoformat() if value is not None else ""


def _assignee_name(entity: CRMLead | CRMClient | CRMTask) -> str:
    return entity.assignee.full_name if entity.assignee is not None else UNASSIGNED


class ReportService:
    def filtered_leads(self, session: Session, filters: ReportFilters) -> list[CRMLead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead).options(
            selectinload(CRMLead.stage),
            selectinload(CRMLead.assignee),
        )
        if filters.start_date is not None:
            stmt = stmt.where(CRMLead.created_at >= _start_of(filters.start_date))
        if filters.end_date is not None:
            # Inclusive of the whole end day.
            stmt = stmt.where(CRMLead.created_at < _start_of(filters.end_date + timedelta(days=1)))
        if filters.status:
            stmt = stmt.where(CRMLead.status == filters.status)
        if filters.source:
            stmt = stmt.where(CRMLead.source == filters.source)
        return list(session.scalars(stmt.order_by(CRMLead.created_at.desc())).all())

    def leads_report(self, session: Session, filters: ReportFilters, today: date | None = None) -> CsvReport:
        rows = [
            {
                "name": lead.name,
                "email": lead.email,
                "phone": lead.phone,
                "company": lead.company,
                "source": lead.source,
                "status": lead.status,
                "stage": lead.stage.name if lead.stage is not None else "",
                "assigned_to": _assignee_name(lead),
                "created_at": _day(lead.created_at),
            }
            for lead in self.filtered_leads(session, filters)
        ]
        return CsvReport(
            filename=report_filename("leads_report", today),
            content=render_csv(LEADS_REPORT_HEADERS, rows),
            row_count=len(rows),
        )

    def clients_report(self, session: Session, today: date | None = None) -> CsvReport:
        clients = session.scalars(
            select(CRMClient).options(selectinload(CRMClient.assignee)).order_by(CRMClient.created_at.desc())
        ).all()
        rows = [
            {
                "name": client.name,
                "company": client.company,
                "email": client.email,
                "phone": client.phone,
                "status": client.status,
                "assigned_to": _assignee_name(client),
                "created_at": _day(client.created_at),
            }
            for client in clients
        ]
        return CsvReport(
            filename=report_filename("clients_report", today),
            content=render_csv(CLIENTS_REPORT_HEADERS, rows),
            row_count=len(rows),
        )

    def tasks_report(self, session: Session, today: date | None = None) -> CsvReport:
        tasks = session.scalars(
            select(CRMTask).options(selectinload(CRMTask.assignee)).order_by(CRMTask.created_at.desc())
        ).all()
        rows = [
            {
                "title": task.title,
                "description": task.description,
                "status": task.status,
                "priority": task.priority,
                "due_date": _day(task.due_date),
                "assigned_to": _assignee_name(task),
                "created_at": _day(task.created_at),
            }
            for task in tasks
        ]
        return CsvReport(
            filename=report_filename("tasks_report", today),
            content=render_csv(TASKS_REPORT_HEADERS, rows),
            row_count=len(rows),
        )

    def summary(self, session: Session, filters: ReportFilters) -> dict[str, int]:
        leads = self.filtered_leads(session, filters)
        task_counts = dict(session.execute(select(CRMTask.status, func.count()).group_by(CRMTask.status)).all())
        return {
            "total_leads": len(leads),
            "converted_leads": sum(1 for lead in leads if lead.status == "converted"),
            "total_clients": session.scalar(select(func.count()).select_from(CRMClient)) or 0,
            "completed_tasks": task_counts.get("completed", 0),
            "pending_tasks": task_counts.get("pending", 0),
        }


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


report_service = ReportService()
