"""
FastAPI exception handlers.

Every error leaves the API in the same envelope:
{"error": <code>, "message": ..., "details": {...}, "path": ...}
"""

import logging
from typing import Any, Dict, List, Optional, Union
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    TimeoutError,
    DisconnectionError,
)

from school_attendance.attendance.models import is_slot_collision
from school_attendance.core.exceptions import (
    BaseAppException,
    ConflictError,
    DatabaseConnectionError,
    DatabaseTimeoutError,
    InternalError,
    ValidationError,
)

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMIT_EXCEEDED",
}

# Request locations FastAPI prefixes onto field paths
_LOCATIONS = {"body", "query", "path", "header"}


def _request_context(request: Request) -> Dict[str, Any]:
    return {
        "path": request.url.path,
        "method": request.method,
        "request_id": getattr(request.state, "request_id", None),
        "actor_id": getattr(request.state, "actor_id", None),
    }


def error_response(
    request: Request, exc: BaseAppException, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
        headers=headers,
    )


async def app_exception_handler(
    request: Request, exc: BaseAppException
) -> JSONResponse:
    # Client errors are expected traffic for a ledger (duplicates, stale edits)
    log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"{exc.error_code}: {exc.message}",
        extra={
            **_request_context(request),
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "details": exc.details,
        },
    )
    return error_response(request, exc)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={**_request_context(request), "status_code": exc.status_code},
    )
    app_exc = BaseAppException(str(exc.detail), exc.status_code, code)
    return error_response(request, app_exc, headers=getattr(exc, "headers", None))


def field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Flatten pydantic errors to ledger field names.

    ("body", "items", 3, "student_id") becomes "items.3.student_id". Input
    values are not echoed back because they may contain student data.
    """
    formatted = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part not in _LOCATIONS]
        formatted.append(
            {
                "field": ".".join(location) or "request",
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "value_error"),
            }
        )
    return formatted


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    fields = field_errors(exc.errors())
    logger.warning(
        f"Request validation failed: {len(fields)} field(s)",
        extra={**_request_context(request), "fields": [f["field"] for f in fields]},
    )

    app_exc = ValidationError(
        fields[0]["message"] if len(fields) == 1 else f"{len(fields)} fields are invalid",
        details={"fields": fields},
        field=fields[0]["field"] if fields else None,
    )
    return error_response(request, app_exc)


async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """SQLAlchemy errors that escaped the CRUD layer"""
    context = _request_context(request)

    if isinstance(exc, IntegrityError):
        # A concurrent writer took the slot between the check and the insert
        if is_slot_collision(exc):
            app_exc = ConflictError(
                "Attendance already recorded for this student on this date/period",
                reason="duplicate",
            )
        else:
            app_exc = ConflictError("Data integrity constraint violated", reason="integrity")
    elif isinstance(exc, (OperationalError, DisconnectionError)):
        app_exc = DatabaseConnectionError("Database connection lost")
    elif isinstance(exc, TimeoutError):
        app_exc = DatabaseTimeoutError(request.url.path, 30)
    else:
        app_exc = InternalError(correlation_id=context["request_id"])

    logger.error(
        f"Database exception: {type(exc).__name__}",
        exc_info=exc,
        extra={**context, "mapped_to": app_exc.error_code},
    )
    return error_response(request, app_exc)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    context = _request_context(request)
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        exc_info=exc,
        extra=context,
    )
    return error_response(request, InternalError(correlation_id=context["request_id"]))


def setup_exception_handlers(app):
    app.add_exception_handler(BaseAppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
