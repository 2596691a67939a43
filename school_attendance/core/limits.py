import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from school_attendance.core.config import RATE_LIMIT_ENABLED

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        f"Rate limit exceeded: {request.method} {request.url.path}",
        extra={"path": request.url.path, "limit": str(exc.detail)},
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "RATE_LIMIT_EXCEEDED",
            "message": f"Rate limit exceeded: {exc.detail}",
            "details": {},
            "path": request.url.path,
        },
    )
