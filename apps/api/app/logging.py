from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
# Only these ``extra`` keys reach the JSON line; anything else is dropped.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        "client_ip",
        # identity
        "user_id",
        "session_id",
        "guard_state",
        "required_roles",
        # crm
        "lead_id",
        "stage_id",
        "entity_type",
        "entity_id",
        "action",
        "outcome",
        "notice_kind",
        "report",
        "row_count",
        "event_name",
        "error",
    }
)
_MAX_ERROR_CHARS = 500


def _record_factory_with_correlation(factory):  # type: ignore[no-untyped-def]
    def build(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = factory(*args, **kwargs)
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return record

    return build


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: envelope keys at the top, whitelisted extras under ``fields``."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        if self.service:
            payload["service"] = self.service

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_CHARS]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service=settings.app_name))

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory_with_correlation(logging.getLogRecordFactory()))
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
