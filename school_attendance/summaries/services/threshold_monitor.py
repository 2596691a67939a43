"""
Below-minimum detection and exactly-once alert dispatch.

A summary's alert is claimed with a conditional update before the
notifier is called, so concurrent dispatchers never alert twice for the
same summary.
"""
import logging
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from school_attendance.core.authorization import (
    AuthorizationGate,
    AuthorizationScope,
    Capability,
    require_capability,
)
from school_attendance.core.cache import SummaryCache, summary_cache
from school_attendance.core.database import db_operation
from school_attendance.core.security import Actor
from school_attendance.summaries.models import AttendanceSummary
from school_attendance.summaries.schemas import (
    AlertDispatchResult,
    AlertFailure,
    SummaryFilters,
)
from school_attendance.summaries.services.notifications import AlertNotifier

logger = logging.getLogger(__name__)


def summary_conditions(filters: SummaryFilters) -> list:
    conditions = []
    if filters.school_id is not None:
        conditions.append(AttendanceSummary.school_id == filters.school_id)
    if filters.class_id is not None:
        conditions.append(AttendanceSummary.class_id == filters.class_id)
    if filters.student_id is not None:
        conditions.append(AttendanceSummary.student_id == filters.student_id)
    if filters.subject_id is not None:
        conditions.append(AttendanceSummary.subject_id == filters.subject_id)
    if filters.academic_year_id is not None:
        conditions.append(AttendanceSummary.academic_year_id == filters.academic_year_id)
    if filters.month is not None:
        conditions.append(AttendanceSummary.month == filters.month)
    if filters.year is not None:
        conditions.append(AttendanceSummary.year == filters.year)
    if filters.below_minimum is not None:
        conditions.append(AttendanceSummary.is_below_minimum == filters.below_minimum)
    if filters.alert_sent is not None:
        conditions.append(AttendanceSummary.alert_sent == filters.alert_sent)
    return conditions


@db_operation
async def scan_below_minimum(
    session: AsyncSession, filters: SummaryFilters
) -> List[AttendanceSummary]:
    """Summaries flagged below minimum, lowest attendance first"""
    conditions = summary_conditions(filters)
    conditions.append(AttendanceSummary.is_below_minimum == True)

    result = await session.execute(
        select(AttendanceSummary)
        .where(and_(*conditions))
        .order_by(AttendanceSummary.attendance_percentage.asc(), AttendanceSummary.id)
    )
    return result.scalars().all()


async def claim_alert(session: AsyncSession, summary_id: int, today: date) -> bool:
    """Reserve the alert for this caller; False if someone already has it"""
    result = await session.execute(
        update(AttendanceSummary)
        .where(
            and_(
                AttendanceSummary.id == summary_id,
                AttendanceSummary.alert_sent == False,
                AttendanceSummary.is_below_minimum == True,
            )
        )
        .values(alert_sent=True, alert_sent_date=today)
    )
    await session.commit()
    return result.rowcount == 1


async def release_alert(session: AsyncSession, summary_id: int) -> None:
    await session.execute(
        update(AttendanceSummary)
        .where(
            and_(
                AttendanceSummary.id == summary_id,
                AttendanceSummary.alert_sent == True,
            )
        )
        .values(alert_sent=False, alert_sent_date=None)
    )
    await session.commit()


async def dispatch_alerts(
    session: AsyncSession,
    summaries: Sequence[AttendanceSummary],
    notifier: AlertNotifier,
    cache: Optional[SummaryCache] = None,
) -> AlertDispatchResult:
    """
    Notify once per below-minimum summary.

    Only the caller that wins the claim notifies. A failed notification
    gives the claim back so a later run can retry, and is reported in the
    result instead of being raised.
    """
    cache = cache or summary_cache
    today = date.today()
    sent_ids: List[int] = []
    failures: List[AlertFailure] = []
    skipped = 0

    for summary in summaries:
        summary_id = summary.id
        summary_key = summary.summary_key
        student_id = summary.student_id

        if not await claim_alert(session, summary_id, today):
            skipped += 1
            continue
        cache.invalidate(summary_key)

        try:
            await notifier.notify_below_minimum(summary)
        except Exception as e:
            logger.error(
                f"Alert delivery failed for summary {summary_id}: {str(e)}",
                extra={"summary_id": summary_id, "student_id": student_id},
                exc_info=True,
            )
            await release_alert(session, summary_id)
            cache.invalidate(summary_key)
            failures.append(
                AlertFailure(summary_id=summary_id, student_id=student_id, message=str(e))
            )
            continue

        sent_ids.append(summary_id)

    logger.info(
        f"Alert dispatch finished: {len(sent_ids)} sent, {skipped} skipped, {len(failures)} failed",
        extra={"sent": len(sent_ids), "skipped": skipped, "failed": len(failures)},
    )

    return AlertDispatchResult(
        scanned_count=len(summaries),
        sent_count=len(sent_ids),
        skipped_count=skipped,
        failed_count=len(failures),
        sent_summary_ids=sent_ids,
        failures=failures,
    )


async def run_alert_cycle(
    session: AsyncSession,
    filters: SummaryFilters,
    notifier: AlertNotifier,
    actor: Actor,
    gate: AuthorizationGate,
    cache: Optional[SummaryCache] = None,
) -> AlertDispatchResult:
    """Scan for unsent below-minimum summaries and dispatch their alerts"""
    await require_capability(
        gate,
        actor,
        Capability.DISPATCH_ALERTS,
        AuthorizationScope(school_id=filters.school_id, class_id=filters.class_id),
    )

    pending = await scan_below_minimum(
        session, filters.model_copy(update={"alert_sent": False})
    )
    return await dispatch_alerts(session, pending, notifier, cache)
