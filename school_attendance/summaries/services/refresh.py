"""
Periodic summary refresh.

Runs inside the application lifespan when SUMMARY_REFRESH_INTERVAL_SECONDS
is set: recalculates the current month and sends pending alerts.
"""
import asyncio
import logging
from datetime import date

from school_attendance.core.database import async_session
from school_attendance.core.logging_utils import error_tracker
from school_attendance.core.security import Actor
from school_attendance.summaries.crud.summaries import get_period_keys, recalculate_keys
from school_attendance.summaries.schemas import SummaryFilters
from school_attendance.summaries.services.notifications import get_alert_notifier
from school_attendance.summaries.services.threshold_monitor import (
    dispatch_alerts,
    scan_below_minimum,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Actor(id=0, roles=("system",))


async def refresh_current_month(session_factory=async_session) -> None:
    today = date.today()

    async with session_factory() as session:
        keys = await get_period_keys(session, today.month, today.year)
        await recalculate_keys(session, keys, SYSTEM_ACTOR)

        pending = await scan_below_minimum(
            session,
            SummaryFilters(month=today.month, year=today.year, alert_sent=False),
        )
        result = await dispatch_alerts(session, pending, get_alert_notifier())

    logger.info(
        f"Summary refresh done: {len(keys)} summaries, {result.sent_count} alerts sent",
        extra={"summaries": len(keys), "alerts_sent": result.sent_count},
    )


async def run_summary_refresh_loop(interval_seconds: float, session_factory=async_session):
    """Refresh forever; a failed round is logged and the next one still runs"""
    logger.info(f"Summary refresh loop started, every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await refresh_current_month(session_factory)
        except Exception as e:
            logger.error(f"Summary refresh failed: {e}", exc_info=True)
            error_tracker.track_error("SUMMARY_REFRESH_ERROR", str(e))
