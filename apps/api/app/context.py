from __future__ import annotations

import re
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass

from starlette.requests import HTTPConnection

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Inbound ids are echoed into headers and logs, so only a conservative charset is accepted.
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


@dataclass
class RequestContext:
    correlation_id: str
    user_id: str | None = None
    session_id: str | None = None


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def accept_correlation_id(raw: str | None) -> str:
    if raw and _CORRELATION_ID_RE.match(raw):
        return raw
    return str(uuid.uuid4())


def request_context(connection: HTTPConnection) -> RequestContext | None:
    return getattr(connection.state, "context", None)


def bind_session(connection: HTTPConnection, user_id: str, session_id: str) -> None:
    context = request_context(connection)
    if context is not None:
        context.user_id = user_id
        context.session_id = session_id
