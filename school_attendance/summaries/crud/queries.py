from typing import List, Optional

from sqlalchemy import and_, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from school_attendance.core.cache import SummaryCache
from school_attendance.core.config import MIN_ATTENDANCE_PERCENTAGE
from school_attendance.core.database import db_operation, utcnow
from school_attendance.summaries.crud.summaries import get_summary_by_key
from school_attendance.summaries.models import AttendanceSummary, SummaryKey
from school_attendance.summaries.schemas import (
    AttendanceReport,
    ReportTotals,
    SummaryFilters,
    SummaryRead,
)
from school_attendance.summaries.services.threshold_monitor import summary_conditions


@db_operation
async def get_student_summaries(
    session: AsyncSession, student_id: int, filters: SummaryFilters
) -> List[AttendanceSummary]:
    """A student's summaries, newest period first"""
    conditions = summary_conditions(filters.model_copy(update={"student_id": student_id}))

    result = await session.execute(
        select(AttendanceSummary)
        .where(and_(*conditions))
        .order_by(
            AttendanceSummary.year.desc(),
            AttendanceSummary.month.desc(),
            AttendanceSummary.id,
        )
    )
    return result.scalars().all()


async def get_summary(
    session: AsyncSession, key: SummaryKey, cache: SummaryCache
) -> Optional[SummaryRead]:
    """One summary by natural key, served from the cache when present"""
    cached = cache.get(key.value)
    if cached is not None:
        return cached

    summary = await get_summary_by_key(session, key)
    if summary is None:
        return None

    read = SummaryRead.model_validate(summary)
    cache.set(key.value, read)
    return read


@db_operation
async def get_below_minimum(
    session: AsyncSession,
    minimum_percentage: float = MIN_ATTENDANCE_PERCENTAGE,
    academic_year_id: Optional[int] = None,
    school_id: Optional[int] = None,
) -> List[AttendanceSummary]:
    """Summaries under the threshold whose alert is still pending"""
    conditions = [
        AttendanceSummary.attendance_percentage < minimum_percentage,
        AttendanceSummary.alert_sent == False,
    ]
    if academic_year_id is not None:
        conditions.append(AttendanceSummary.academic_year_id == academic_year_id)
    if school_id is not None:
        conditions.append(AttendanceSummary.school_id == school_id)

    result = await session.execute(
        select(AttendanceSummary)
        .where(and_(*conditions))
        .order_by(AttendanceSummary.attendance_percentage.asc(), AttendanceSummary.id)
    )
    return result.scalars().all()


@db_operation
async def generate_report(
    session: AsyncSession, filters: SummaryFilters
) -> AttendanceReport:
    conditions = summary_conditions(filters)

    result = await session.execute(
        select(AttendanceSummary)
        .where(*conditions)
        .order_by(AttendanceSummary.attendance_percentage.asc(), AttendanceSummary.id)
    )
    summaries = result.scalars().all()

    totals_result = await session.execute(
        select(
            func.count(func.distinct(AttendanceSummary.student_id)),
            func.count(AttendanceSummary.id),
            func.avg(AttendanceSummary.attendance_percentage),
        ).where(*conditions)
    )
    student_count, summary_count, average = totals_result.one()

    return AttendanceReport(
        generated_at=utcnow(),
        filters=filters.model_dump(exclude_none=True),
        totals=ReportTotals(
            student_count=student_count or 0,
            summary_count=summary_count or 0,
            average_attendance_percentage=round(float(average or 0), 2),
            below_minimum_count=sum(1 for s in summaries if s.is_below_minimum),
        ),
        summaries=[SummaryRead.model_validate(s) for s in summaries],
    )
