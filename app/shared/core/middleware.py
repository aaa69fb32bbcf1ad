from collections.abc import Awaitable, Callable
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Injects a unique X-Request-ID into the logs and response.
    NOTE: This middleware trusts the X-Request-ID header if provided by the
    caller (gateways send their own delivery ids). It is for correlation only.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Store in state for easy access in endpoints and tests
        request.state.request_id = request_id

        # Log injection via contextvars (supported by structlog)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
