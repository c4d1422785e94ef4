"""
RequestContext Middleware - Adds request tracking to all requests.

Every request gets a request_id that is:
- stored on request.state.request_id
- bound into the structlog context, so every log line emitted while the
  request is handled carries it
- returned to the caller as the X-Request-ID header

An incoming X-Request-ID (e.g. from the provider or a load balancer) is
reused when present.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Add request context to all incoming requests.

    Adds to request.state:
    - request_id: ID for tracing this request
    - ip_address: Client IP address
    """

    async def dispatch(self, request: Request, call_next):
        """Process request and add context."""
        request_id = self._incoming_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.ip_address = request.client.host if request.client else None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.debug(
            "Request started",
            method=request.method,
            path=request.url.path,
            ip_address=request.state.ip_address,
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response

    def _incoming_request_id(self, request: Request) -> str | None:
        value = request.headers.get("x-request-id")
        if value and len(value) <= MAX_REQUEST_ID_LENGTH:
            return value
        return None
