"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "retryable": ...}}``
JSON responses.

Status code mapping:
- ``SyncRetryRequiredError`` → 409 Conflict (retrying performs a full sync)
- ``CalendarRequestError`` → 502 Bad Gateway (retryable for 429 / 5xx / transport)
- any other ``CalendarClientError`` → 502 Bad Gateway
- ``HTTPException`` → its own status code
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from calpush.api.models import ErrorDetail, ErrorResponse
from calpush.core.sync import SyncRetryRequiredError
from calpush.providers.base import CalendarClientError, CalendarRequestError

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    retryable: bool = False,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, retryable=retryable))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def _handle_sync_retry_required(
    request: Request,
    exc: SyncRetryRequiredError,
) -> JSONResponse:
    """Return 409 when the continuation token expired and was cleared."""
    logger.info("Sync token expired for user %s; client must retry", exc.user_id)
    return _error_response(409, "SYNC_TOKEN_EXPIRED", str(exc), retryable=True)


async def _handle_calendar_request_error(
    request: Request,
    exc: CalendarRequestError,
) -> JSONResponse:
    """Return 502 when the calendar provider cannot be reached or refuses the call."""
    logger.warning("Calendar provider request failed: %s", exc)
    return _error_response(
        502,
        "CALENDAR_UNAVAILABLE",
        str(exc),
        retryable=exc.retryable,
    )


async def _handle_calendar_error(
    request: Request,
    exc: CalendarClientError,
) -> JSONResponse:
    """Return 502 for any other provider-side failure."""
    logger.warning("Calendar provider error: %s", exc)
    return _error_response(502, "CALENDAR_ERROR", str(exc))


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _error_response(
        exc.status_code,
        code,
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are looked up along the exception's MRO, so the more specific
    ``CalendarRequestError`` handler wins over the ``CalendarClientError`` one.
    """
    app.add_exception_handler(SyncRetryRequiredError, _handle_sync_retry_required)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarRequestError, _handle_calendar_request_error)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarClientError, _handle_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
