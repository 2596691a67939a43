import logging
from datetime import date
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import Text, and_, case, cast, false, func, null, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from school_attendance.attendance.models import AttendanceRecord
from school_attendance.core.authorization import (
    AuthorizationGate,
    AuthorizationScope,
    Capability,
    require_capability,
)
from school_attendance.core.cache import SummaryCache, summary_cache
from school_attendance.core.config import (
    BULK_CHUNK_SIZE,
    BULK_OPERATION_TIMEOUT_SECONDS,
    MIN_ATTENDANCE_PERCENTAGE,
)
from school_attendance.core.context import OperationContext
from school_attendance.core.database import db_operation, utcnow
from school_attendance.core.exceptions import ConfigurationError, ValidationError
from school_attendance.core.logging_utils import log_business_event
from school_attendance.core.security import Actor
from school_attendance.summaries.models import AttendanceSummary, SummaryKey
from school_attendance.summaries.schemas import RecalculationError, RecalculationResult
from school_attendance.summaries.services.aggregation import (
    METRIC_FIELDS,
    compute_summary_metrics,
)

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def month_bounds(month: int, year: int) -> Tuple[date, date]:
    """[first day of month, first day of next month)"""
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12", field="month")
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def keys_for_record(record) -> Set[SummaryKey]:
    """The subject key a record feeds plus the all-subjects key"""
    key = SummaryKey.from_record(record)
    keys = {key}
    if key.subject_id is not None:
        keys.add(
            SummaryKey(
                student_id=key.student_id,
                class_id=key.class_id,
                subject_id=None,
                academic_year_id=key.academic_year_id,
                month=key.month,
                year=key.year,
            )
        )
    return keys


@db_operation
async def fetch_period_records(
    session: AsyncSession, key: SummaryKey
) -> List[AttendanceRecord]:
    """Live records feeding a summary; a null subject means every subject"""
    start, end = month_bounds(key.month, key.year)
    conditions = [
        AttendanceRecord.student_id == key.student_id,
        AttendanceRecord.class_id == key.class_id,
        AttendanceRecord.academic_year_id == key.academic_year_id,
        AttendanceRecord.attendance_date >= start,
        AttendanceRecord.attendance_date < end,
        AttendanceRecord.deleted_at.is_(None),
    ]
    if key.subject_id is not None:
        conditions.append(AttendanceRecord.subject_id == key.subject_id)

    result = await session.execute(
        select(AttendanceRecord)
        .where(and_(*conditions))
        .order_by(AttendanceRecord.attendance_date, AttendanceRecord.period_number)
    )
    return result.scalars().all()


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise ConfigurationError(
            "DATABASE_URL", f"Summary upsert is not supported on '{dialect}'"
        )
    return insert


def _build_upsert(session: AsyncSession, values: dict):
    insert = _insert_for(session)
    stmt = insert(AttendanceSummary).values(**values)
    excluded = stmt.excluded
    table = AttendanceSummary.__table__.c

    set_ = {name: excluded[name] for name in METRIC_FIELDS}
    set_.update(
        school_id=func.coalesce(excluded.school_id, table.school_id),
        calculated_at=excluded.calculated_at,
        calculated_by=excluded.calculated_by,
        updated_at=excluded.calculated_at,
        # A sent alert stays sent while the student remains below minimum
        alert_sent=case(
            (excluded.is_below_minimum, table.alert_sent), else_=false()
        ),
        alert_sent_date=case(
            (excluded.is_below_minimum, table.alert_sent_date), else_=null()
        ),
    )

    changed = [
        table[name].is_distinct_from(excluded[name])
        for name in METRIC_FIELDS
        if name != "weekly_breakdown"
    ]
    changed.append(
        cast(table.weekly_breakdown, Text).is_distinct_from(
            cast(excluded.weekly_breakdown, Text)
        )
    )

    return stmt.on_conflict_do_update(
        index_elements=[table.summary_key],
        set_=set_,
        where=or_(*changed),
    )


@db_operation
async def get_summary_by_key(
    session: AsyncSession, key: SummaryKey
) -> Optional[AttendanceSummary]:
    result = await session.execute(
        select(AttendanceSummary)
        .where(AttendanceSummary.summary_key == key.value)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


@db_operation
async def calculate_summary(
    session: AsyncSession,
    student_id: int,
    class_id: int,
    subject_id: Optional[int],
    academic_year_id: int,
    month: int,
    year: int,
    actor: Actor,
    minimum_required_percentage: Optional[float] = None,
    cache: Optional[SummaryCache] = None,
) -> AttendanceSummary:
    """
    Recompute and upsert the summary for one key.

    The row is only rewritten when a metric differs from what is stored,
    so repeating the call on an unchanged ledger leaves it untouched.
    """
    key = SummaryKey(
        student_id=student_id,
        class_id=class_id,
        subject_id=subject_id,
        academic_year_id=academic_year_id,
        month=month,
        year=year,
    )
    if minimum_required_percentage is None:
        minimum_required_percentage = MIN_ATTENDANCE_PERCENTAGE

    records = await fetch_period_records(session, key)
    metrics = compute_summary_metrics(records, minimum_required_percentage)

    now = utcnow()
    values = {
        "summary_key": key.value,
        "school_id": records[0].school_id if records else None,
        "student_id": student_id,
        "class_id": class_id,
        "subject_id": subject_id,
        "academic_year_id": academic_year_id,
        "month": month,
        "year": year,
        **metrics.as_dict(),
        "alert_sent": False,
        "alert_sent_date": None,
        "calculated_at": now,
        "calculated_by": actor.id,
        "created_at": now,
        "updated_at": now,
    }

    result = await session.execute(_build_upsert(session, values))
    await session.commit()
    (cache or summary_cache).invalidate(key.value)

    summary = await get_summary_by_key(session, key)

    if result.rowcount:
        log_business_event(
            "summary_calculated",
            "attendance_summary",
            summary.id,
            {
                "summary_key": key.value,
                "attendance_percentage": summary.attendance_percentage,
                "is_below_minimum": summary.is_below_minimum,
                "calculated_by": actor.id,
            },
        )

    return summary


async def recalculate_keys(
    session: AsyncSession,
    keys: Iterable[SummaryKey],
    actor: Actor,
    cache: Optional[SummaryCache] = None,
) -> List[AttendanceSummary]:
    summaries = []
    for key in sorted(keys, key=lambda k: k.value):
        summaries.append(
            await calculate_summary(
                session,
                key.student_id,
                key.class_id,
                key.subject_id,
                key.academic_year_id,
                key.month,
                key.year,
                actor,
                cache=cache,
            )
        )
    return summaries


@db_operation
async def get_period_keys(
    session: AsyncSession,
    month: int,
    year: int,
    school_id: Optional[int] = None,
    class_id: Optional[int] = None,
) -> List[SummaryKey]:
    """Distinct summary keys with live records in a month"""
    start, end = month_bounds(month, year)
    conditions = [
        AttendanceRecord.attendance_date >= start,
        AttendanceRecord.attendance_date < end,
        AttendanceRecord.deleted_at.is_(None),
    ]
    if school_id is not None:
        conditions.append(AttendanceRecord.school_id == school_id)
    if class_id is not None:
        conditions.append(AttendanceRecord.class_id == class_id)

    result = await session.execute(
        select(
            AttendanceRecord.student_id,
            AttendanceRecord.class_id,
            AttendanceRecord.subject_id,
            AttendanceRecord.academic_year_id,
        )
        .where(and_(*conditions))
        .distinct()
    )

    keys: Set[SummaryKey] = set()
    for student_id, row_class_id, subject_id, academic_year_id in result.all():
        for subject in {subject_id, None}:
            keys.add(
                SummaryKey(
                    student_id=student_id,
                    class_id=row_class_id,
                    subject_id=subject,
                    academic_year_id=academic_year_id,
                    month=month,
                    year=year,
                )
            )
    return sorted(keys, key=lambda k: k.value)


async def recalculate_period(
    session: AsyncSession,
    month: int,
    year: int,
    actor: Actor,
    gate: AuthorizationGate,
    school_id: Optional[int] = None,
    class_id: Optional[int] = None,
    context: Optional[OperationContext] = None,
    cache: Optional[SummaryCache] = None,
) -> RecalculationResult:
    """
    Recompute every summary with records in the month.

    Keys are committed one at a time and processed in chunks; a failing
    key is reported and the rest carry on. When the context trips the
    summaries already written are kept.
    """
    await require_capability(
        gate,
        actor,
        Capability.RECALCULATE,
        AuthorizationScope(school_id=school_id, class_id=class_id),
    )
    if context is None:
        context = OperationContext(timeout_seconds=BULK_OPERATION_TIMEOUT_SECONDS)

    keys = await get_period_keys(session, month, year, school_id, class_id)
    recalculated = 0
    below_minimum = 0
    errors: List[RecalculationError] = []

    for chunk_start in range(0, len(keys), BULK_CHUNK_SIZE):
        if context.cancelled:
            break

        for key in keys[chunk_start : chunk_start + BULK_CHUNK_SIZE]:
            if context.cancelled:
                break
            try:
                summary = await recalculate_keys(session, [key], actor, cache)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    f"Summary recalculation failed for {key.value}: {str(e)}",
                    extra={"summary_key": key.value},
                )
                errors.append(
                    RecalculationError(summary_key=key.value, message=str(e))
                )
                continue

            recalculated += 1
            if summary[0].is_below_minimum:
                below_minimum += 1

        session.expunge_all()

    cancelled = recalculated + len(errors) < len(keys)

    logger.info(
        f"Recalculated {recalculated}/{len(keys)} summaries for {year}-{month:02d}",
        extra={
            "month": month,
            "year": year,
            "school_id": school_id,
            "class_id": class_id,
            "cancelled": cancelled,
        },
    )

    return RecalculationResult(
        month=month,
        year=year,
        total_keys=len(keys),
        recalculated_count=recalculated,
        below_minimum_count=below_minimum,
        error_count=len(errors),
        errors=errors,
        cancelled=cancelled,
        cancel_reason=context.reason if cancelled else None,
    )
