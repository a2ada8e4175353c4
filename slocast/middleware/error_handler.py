"""
Global Error Handler Middleware.

Converts any exception escaping a route into {"error": message} with the
exception's status_code (500 when it has none). Every error gets an
error_id for correlation with server logs.
"""

import uuid

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slocast.config import settings
from slocast.errors import SlocastError

logger = structlog.get_logger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches everything below it and answers with the JSON error envelope."""

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = str(uuid.uuid4())
            status_code = getattr(exc, "status_code", 500)

            if isinstance(exc, SlocastError) and status_code < 500:
                logger.warning(
                    "request_rejected",
                    error_id=error_id,
                    status=status_code,
                    error=exc.message,
                )
            else:
                logger.error(
                    "unhandled_exception",
                    error_id=error_id,
                    status=status_code,
                    error=str(exc),
                    exc_info=True,
                )

            body: dict = {"error": str(exc) or type(exc).__name__, "error_id": error_id}
            if settings.debug:
                body["debug_hint"] = type(exc).__name__
            return JSONResponse(status_code=status_code, content=body)
