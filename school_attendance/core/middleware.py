import time
import logging
import uuid
from typing import Callable, Iterable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from school_attendance.core.logging_utils import error_tracker

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PATHS = ("/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico")
REQUEST_ID_HEADER = "X-Request-ID"


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    One log line per ledger request.

    The request id comes from the caller's X-Request-ID header when present
    so that gateway, API and alert logs share a correlation id. The actor and
    school are filled in by the authentication dependency, which runs inside
    call_next, so they are only known for the completion line.
    """

    def __init__(
        self,
        app: ASGIApp,
        slow_request_threshold: float = 1.0,
        quiet_paths: Iterable[str] = DEFAULT_QUIET_PATHS,
    ):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold
        self.quiet_paths = frozenset(quiet_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        if request.url.path in self.quiet_paths:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            self._log_failure(request, request_id, started, e)
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "actor_id": getattr(request.state, "actor_id", None),
            "school_id": getattr(request.state, "school_id", None),
            "client_ip": _client_ip(request),
        }

        if duration_ms > self.slow_request_threshold * 1000:
            logger.warning(
                f"Slow request: {request.method} {request.url.path}",
                extra={**extra, "category": "performance"},
            )
        else:
            logger.info(f"{request.method} {request.url.path} {response.status_code}", extra=extra)

        if response.status_code >= 500:
            error_tracker.track_error(
                error_type=f"HTTP_{response.status_code}",
                error_message=f"HTTP {response.status_code} response",
                context={"request_id": request_id, "path": request.url.path},
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _log_failure(
        self, request: Request, request_id: str, started: float, exc: Exception
    ) -> None:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "actor_id": getattr(request.state, "actor_id", None),
                "error_type": type(exc).__name__,
            },
        )
        error_tracker.track_error(
            error_type=type(exc).__name__,
            error_message=str(exc),
            context={"request_id": request_id, "path": request.url.path},
        )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attendance responses carry student data and must not be cached by proxies"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"

        return response


def setup_middleware(
    app,
    slow_request_threshold: float = 1.0,
    quiet_paths: Optional[Iterable[str]] = None,
):
    # The last middleware added is the outermost one
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        AccessLogMiddleware,
        slow_request_threshold=slow_request_threshold,
        quiet_paths=quiet_paths or DEFAULT_QUIET_PATHS,
    )
