"""Middleware for request context."""

import logging
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.request_context import set_conversation_context, set_request_id

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and exposes it to logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with a fresh logging context.

        Args:
            request: FastAPI request
            call_next: Next middleware/handler

        Returns:
            Response carrying the X-Request-ID header
        """
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(request_id)
        set_conversation_context(None)
        try:
            response = await call_next(request)
        finally:
            set_conversation_context(None)

        response.headers["X-Request-ID"] = request_id
        return response
