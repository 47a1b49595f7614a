"""
Domain errors for the chat core and their HTTP rendering.

The realtime path catches these and drops the event; the REST path lets
them propagate to the handlers registered here.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from portal_shared.schemas.common import ErrorDetail, ErrorResponse

log = structlog.get_logger()


class PortalError(Exception):
    code = "PORTAL_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PortalError):
    """Malformed or empty input (empty content, non-numeric channel id)."""
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(PortalError):
    """A referenced channel does not exist."""
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(PortalError):
    """A channel with the same name already exists."""
    code = "CONFLICT"
    status_code = 409


class TransportError(PortalError):
    """A send to one realtime connection failed. Never leaves the registry."""
    code = "TRANSPORT_ERROR"
    status_code = 503


def error_body(code: str, message: str, status: int) -> dict:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, status=status))
    return body.model_dump(exclude_none=True)


async def _portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    log.info(
        "http.domain_error",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        message=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.status_code),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PortalError, _portal_error_handler)
