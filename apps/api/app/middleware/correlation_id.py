from __future__ import annotations

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import RequestContext, accept_correlation_id, reset_correlation_id, set_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds one correlation id per request and echoes it on the response.

    The id also seeds ``request.state.context``, which the session dependency
    fills with the signed-in user once the request is authenticated.
    """

    header_name = "x-correlation-id"
    request_id_header = "x-request-id"

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = accept_correlation_id(request.headers.get(self.header_name))
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(correlation_id=correlation_id)
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[self.header_name] = correlation_id
        response.headers[self.request_id_header] = correlation_id
        return response
