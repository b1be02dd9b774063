"""Session/role guard for protected views.

A guard is mounted once per view load. It resolves the current session from
whichever arrives first: the immediate session fetch or the first
session-change notification (the fetch is cancelled in the latter case). With
a session in hand and a role requirement present, it asks the backend whether
the user holds any of the required roles. Lookup failures deny access.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Protocol

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.authz.service import SESSION_CHANGED_EVENT, IdentityService, ResolvedSession, identity_service
from app.core.auth import decode_session_token
from app.core.events import InProcessEventBus, InternalEvent, Unsubscribe, event_bus
from app.metrics import observe_guard_decision


logger = logging.getLogger("app.authz.guard")

SessionCallback = Callable[[ResolvedSession | None], None]


class GuardState(StrEnum):
    INITIALIZING = "initializing"
    CHECKING_ROLE = "checking_role"
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    REDIRECTED = "redirected"


TERMINAL_STATES = frozenset({GuardState.AUTHORIZED, GuardState.DENIED, GuardState.REDIRECTED})


def normalize_required_roles(required_roles: str | Iterable[str] | None) -> frozenset[str]:
    if required_roles is None:
        return frozenset()
    if isinstance(required_roles, str):
        return frozenset({required_roles})
    return frozenset(required_roles)


class SessionBackend(Protocol):
    """Remote auth operations a guard depends on, bound to one credential."""

    async def get_session(self) -> ResolvedSession | None:
        ...

    def on_session_change(self, callback: SessionCallback) -> Unsubscribe:
        ...

    async def has_any_role(self, user_id: uuid.UUID, roles: frozenset[str]) -> bool:
        ...


class DbSessionBackend:
    def __init__(
        self,
        db: Session,
        token: str | None,
        *,
        service: IdentityService = identity_service,
        bus: InProcessEventBus = event_bus,
    ) -> None:
        self._db = db
        self._token = token
        self._service = service
        self._bus = bus

    async def get_session(self) -> ResolvedSession | None:
        return await run_in_threadpool(self._service.resolve_session, self._db, self._token)

    def on_session_change(self, callback: SessionCallback) -> Unsubscribe:
        claims = decode_session_token(self._token) if self._token else None
        if claims is None:
            return lambda: None
        session_id = claims.sid

        def handler(event: InternalEvent) -> None:
            details = event.payload.get("payload") or {}
            if details.get("session_id") != session_id:
                return
            if details.get("change") == "SIGNED_OUT":
                callback(None)

        return self._bus.subscribe(SESSION_CHANGED_EVENT, handler)

    async def has_any_role(self, user_id: uuid.UUID, roles: frozenset[str]) -> bool:
        return await run_in_threadpool(self._service.has_any_role, self._db, user_id, roles)


class SessionGuard:
    def __init__(
        self,
        backend: SessionBackend,
        required_roles: str | Iterable[str] | None = None,
        *,
        on_redirect: Callable[[], None] | None = None,
    ) -> None:
        self.required_roles = normalize_required_roles(required_roles)
        self.state = GuardState.INITIALIZING
        self.session: ResolvedSession | None = None
        self._backend = backend
        self._on_redirect = on_redirect
        self._mounted = False
        self._redirected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._first_change: asyncio.Future[ResolvedSession | None] | None = None
        self._unsubscribe: Unsubscribe | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    async def mount(self) -> GuardState:
        self._loop = asyncio.get_running_loop()
        self._mounted = True
        self._first_change = self._loop.create_future()
        self._unsubscribe = self._backend.on_session_change(self._handle_session_change)

        fetch = asyncio.ensure_future(self._backend.get_session())
        await asyncio.wait({fetch, self._first_change}, return_when=asyncio.FIRST_COMPLETED)

        if self._first_change.done():
            fetch.cancel()
            session = self._first_change.result()
        else:
            # Later notifications must reach the live handler, not this race.
            self._first_change.cancel()
            try:
                session = fetch.result()
            except Exception as exc:
                logger.warning("guard.session_fetch_failed", extra={"error": str(exc)})
                session = None

        if not self._mounted:
            return self.state
        await self._resolve(session)
        return self.state

    def unmount(self) -> None:
        self._mounted = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def __aenter__(self) -> SessionGuard:
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unmount()

    def _handle_session_change(self, session: ResolvedSession | None) -> None:
        # Notifications may be published from a worker thread.
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._apply_session_change, session)

    def _apply_session_change(self, session: ResolvedSession | None) -> None:
        if not self._mounted:
            return
        if self._first_change is not None and not self._first_change.done():
            self._first_change.set_result(session)
            return
        if session is None and self.state is not GuardState.REDIRECTED:
            self.session = None
            self._redirect()

    async def _resolve(self, session: ResolvedSession | None) -> None:
        self.session = session
        if session is None:
            self.state = GuardState.UNAUTHENTICATED
            self._redirect()
            return

        if not self.required_roles:
            self._settle(GuardState.AUTHORIZED)
            return

        self.state = GuardState.CHECKING_ROLE
        try:
            allowed = await self._backend.has_any_role(session.user_id, self.required_roles)
        except Exception as exc:
            logger.error(
                "guard.role_check_failed",
                extra={"user_id": str(session.user_id), "required_roles": sorted(self.required_roles), "error": str(exc)},
            )
            allowed = False

        if not self._mounted or self.state is not GuardState.CHECKING_ROLE:
            return
        self._settle(GuardState.AUTHORIZED if allowed else GuardState.DENIED)

    def _settle(self, state: GuardState) -> None:
        self.state = state
        observe_guard_decision(state.value)
        logger.info(
            "guard.decision",
            extra={
                "guard_state": state.value,
                "required_roles": sorted(self.required_roles),
                "user_id": str(self.session.user_id) if self.session else None,
            },
        )

    def _redirect(self) -> None:
        if self._redirected:
            return
        self._redirected = True
        self._settle(GuardState.REDIRECTED)
        if self._on_redirect is not None:
            self._on_redirect()
