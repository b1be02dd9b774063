from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emits one ``http.request`` line per request and feeds the HTTP metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._finish(request, started, 500, failed=True)
            raise
        self._finish(request, started, response.status_code)
        return response

    def _finish(self, request: Request, started: float, status_code: int, failed: bool = False) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

        context = request_context(request)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "user_id": context.user_id if context is not None else None,
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        elif status_code >= 500:
            logger.warning("http.request", extra=fields)
        else:
            logger.info("http.request", extra=fields)
