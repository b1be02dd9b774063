from __future__ import annotations

import logging
from typing import Protocol

from app.crm.schemas import Notice, NoticeKind


logger = logging.getLogger("app.crm.notifications")


class NotificationSink(Protocol):
    def notify(self, kind: NoticeKind, message: str) -> None:
        ...


class CollectingNotificationSink:
    """Keeps transient notices so a request can return them with its payload."""

    def __init__(self) -> None:
        self.notices: list[Notice] = []

    def notify(self, kind: NoticeKind, message: str) -> None:
        self.notices.append(Notice(kind=kind, message=message))
        _log_notice(kind, message)

    def errors(self) -> list[Notice]:
        return [notice for notice in self.notices if notice.kind == "error"]


def _log_notice(kind: str, message: str) -> None:
    level = logging.WARNING if kind in {"error", "warning"} else logging.INFO
    logger.log(level, message, extra={"notice_kind": kind})
