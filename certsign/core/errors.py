"""Service error taxonomy and its translation into HTTP error bodies.

Every failure the API can report is a :class:`ServiceError`. Handlers
registered by :func:`register_exception_handlers` are the only place where
those errors become HTTP responses, so route code never builds error payloads
itself.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    status: str = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, *, headers: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.headers = headers


class BadRequest(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    status = "BAD_REQUEST"


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    status = "NOT_FOUND"


class Conflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    status = "CONFLICT"


class InternalError(ServiceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    status = "INTERNAL_SERVER_ERROR"


_STATUS_NAMES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    500: "INTERNAL_SERVER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def error_body(code: int, message: str, status_name: str | None = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "status": status_name or _STATUS_NAMES.get(code, "UNKNOWN"),
        }
    }


def _json_error(code: int, message: str, status_name: str | None = None, headers=None):
    return JSONResponse(
        status_code=code,
        content=error_body(code, message, status_name),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the ``{"error": {...}}`` shape."""

    async def service_error_handler(request: Request, exc: ServiceError):  # type: ignore[unused-arg]
        log = logger.bind(status=exc.status_code, error_status=exc.status)
        if exc.status_code >= 500:
            log.error("request_failed: {}", exc.message)
        else:
            log.info("request_rejected: {}", exc.message)
        return _json_error(exc.status_code, exc.message, exc.status, exc.headers)

    async def validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore[unused-arg]
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _json_error(400, f"Request is malformed: {problems}")

    async def http_error_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[unused-arg]
        return _json_error(exc.status_code, str(exc.detail), headers=exc.headers)

    async def unhandled_error_handler(request: Request, exc: Exception):  # type: ignore[unused-arg]
        logger.opt(exception=exc).error("unhandled_exception")
        return _json_error(500, "Unexpected error occurred.")

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
