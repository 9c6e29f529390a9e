"""HTTP middleware: request tracing and response hardening."""

import logging
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from paysync.config import settings

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0


def _actor_tag(request: Request) -> str:
    actor = getattr(request.state, "actor", None)
    return str(actor) if actor is not None else "anonymous"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Trace every request with an id and log who did what, and how long it took.

    The request id is echoed back in ``X-Request-ID`` so gateway callbacks and
    client calls can be matched against server logs and audit records.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)

        elapsed = time.perf_counter() - started
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

        level = logging.WARNING if elapsed > SLOW_REQUEST_SECONDS else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed:.3f}s) actor={_actor_tag(request)} request_id={request_id}",
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add hardening headers; HSTS only outside debug."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Cache-Control", "no-store")
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response
