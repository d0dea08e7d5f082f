"""Request ID + access log middleware.

Learn: Every request gets an id, taken from X-Request-ID when the
client (or the load balancer) sent a sane one, generated otherwise.
It is bound to structlog's contextvars, so every log line emitted
while handling the request carries it, and echoed back in the
response header. One http.request line per request records status
and duration.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

MAX_REQUEST_ID_LENGTH = 128

# Heartbeats arrive every ~30s from every open tab; logging each one
# would drown everything else.
QUIET_PATHS = frozenset({"/api/v1/presence", "/api/v1/health"})


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        path = request.url.path

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=path)

        started = time.perf_counter()
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        if path not in QUIET_PATHS or response.status_code >= 400:
            logger.info(
                "http.request",
                method=request.method,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        return response
