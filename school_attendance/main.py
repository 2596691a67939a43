import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from school_attendance.core.limits import limiter, rate_limit_handler
from school_attendance.core.error_handlers import setup_exception_handlers
from school_attendance.core.database import db_manager
from school_attendance.core.middleware import setup_middleware
from school_attendance.core.logging_utils import (
    setup_logging,
    get_logger,
    log_business_event,
    error_tracker,
)
from school_attendance.core.config import (
    validate_config,
    ALERT_CHANNEL,
    AUTHZ_MODE,
    APP_NAME,
    APP_VERSION,
    CORS_ORIGINS,
    DEBUG,
    ENVIRONMENT,
    LOG_LEVEL,
    LOG_FORMAT,
    SLOW_REQUEST_THRESHOLD_SECONDS,
    SUMMARY_REFRESH_INTERVAL_SECONDS,
)

# Register every table on the shared metadata before create_all
from school_attendance.attendance import models as attendance_models  # noqa: F401
from school_attendance.summaries import models as summary_models  # noqa: F401

from school_attendance.attendance.routers import attendance
from school_attendance.summaries.routers import summaries
from school_attendance.summaries.services.refresh import run_summary_refresh_loop

setup_logging(LOG_LEVEL, LOG_FORMAT)
logger = get_logger(__name__)


def start_summary_refresh() -> Optional[asyncio.Task]:
    if SUMMARY_REFRESH_INTERVAL_SECONDS <= 0:
        logger.info("Periodic summary refresh disabled")
        return None
    return asyncio.create_task(
        run_summary_refresh_loop(SUMMARY_REFRESH_INTERVAL_SECONDS),
        name="summary-refresh",
    )


async def stop_summary_refresh(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {APP_NAME} v{APP_VERSION} ({ENVIRONMENT})")

    try:
        validate_config()
        await db_manager.check_connection()
        await db_manager.create_tables()
    except Exception as e:
        logger.error(f"❌ Startup failed: {e}")
        error_tracker.track_error(
            "STARTUP_ERROR", str(e), {"version": APP_VERSION, "environment": ENVIRONMENT}
        )
        raise

    refresh_task = start_summary_refresh()
    log_business_event(
        "application_started",
        "system",
        0,
        {
            "version": APP_VERSION,
            "authorization": AUTHZ_MODE,
            "alert_channel": ALERT_CHANNEL,
            "refresh_interval_seconds": SUMMARY_REFRESH_INTERVAL_SECONDS,
        },
    )
    logger.info("🚀 Ledger API ready")

    yield

    await stop_summary_refresh(refresh_task)
    await db_manager.close_connections()
    logger.info("👋 Ledger API stopped")


app = FastAPI(
    title=APP_NAME,
    description="Per-period attendance ledger and monthly attendance summaries",
    version=APP_VERSION,
    lifespan=lifespan,
    debug=DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

setup_middleware(app, slow_request_threshold=SLOW_REQUEST_THRESHOLD_SECONDS)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

app.include_router(attendance.router, prefix="/api/v1")
app.include_router(summaries.router, prefix="/api/v1")


@app.get("/health", tags=["System"])
async def health():
    return {
        "status": "healthy",
        "service": APP_NAME,
        "version": APP_VERSION,
        "errors": error_tracker.get_stats(),
    }
