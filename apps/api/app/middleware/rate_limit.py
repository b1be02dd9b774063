from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_session_token, extract_session_token
from app.core.config import Settings, get_settings


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, subject: str, bucket: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (subject, bucket)

        with self._lock:
            current = self._buckets.setdefault(key, _BucketState(tokens=float(capacity), last_refill=now))
            current.tokens = min(float(capacity), current.tokens + max(0.0, now - current.last_refill) * refill_rate)
            current.last_refill = now

            if current.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - current.tokens) / refill_rate))

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()


@dataclass(frozen=True)
class RatePolicy:
    """One throttled surface: which requests it covers, who a bucket belongs to, and its size."""

    name: str
    applies: Callable[[Request], bool]
    subject: Callable[[Request], str]
    bucket: Callable[[Request], str]
    capacity: Callable[[Settings], int]


_MUTATING_METHODS = {"POST", "PATCH", "PUT", "DELETE"}


def _is_crm_mutation(request: Request) -> bool:
    return request.url.path.startswith("/api/crm") and request.method.upper() in _MUTATING_METHODS


def _is_sign_in(request: Request) -> bool:
    return request.url.path == "/api/auth/sign-in" and request.method.upper() == "POST"


def _crm_resource(request: Request) -> str:
    # /api/crm/<resource>/... buckets per resource so lead edits don't starve task edits
    parts = [part for part in request.url.path.split("/") if part]
    return parts[2] if len(parts) >= 3 else "crm"


def _session_subject(request: Request) -> str:
    token = extract_session_token(request)
    claims = decode_session_token(token) if token else None
    return claims.sub if claims is not None else "anonymous"


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


POLICIES: tuple[RatePolicy, ...] = (
    RatePolicy(
        name="sign_in",
        applies=_is_sign_in,
        subject=_client_address,
        bucket=lambda _request: "sign-in",
        capacity=lambda settings: settings.rate_limit_sign_in_per_minute,
    ),
    RatePolicy(
        name="crm_mutation",
        applies=_is_crm_mutation,
        subject=_session_subject,
        bucket=_crm_resource,
        capacity=lambda settings: settings.rate_limit_crm_mutations_per_minute,
    ),
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    window_seconds = 60

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        policy = next((candidate for candidate in POLICIES if candidate.applies(request)), None)
        if policy is None:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            subject=policy.subject(request),
            bucket=f"{policy.name}:{policy.bucket(request)}",
            capacity=policy.capacity(settings),
            window_seconds=self.window_seconds,
        )
        if allowed:
            return await call_next(request)
        return _too_many_requests(request, retry_after)


def _too_many_requests(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_seconds": retry_after},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def reset_rate_limiter() -> None:
    _limiter.clear()
