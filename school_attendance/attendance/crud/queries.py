from typing import List, Tuple

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from school_attendance.attendance.models import AttendanceRecord
from school_attendance.attendance.schemas import (
    AttendanceFilters,
    AttendanceStatistics,
    SortOrder,
    StatusBreakdown,
)
from school_attendance.core.database import db_operation
from school_attendance.core.exceptions import ValidationError
from school_attendance.summaries.services.aggregation import percentage

SORTABLE_FIELDS = {
    "attendance_date": AttendanceRecord.attendance_date,
    "period_number": AttendanceRecord.period_number,
    "student_id": AttendanceRecord.student_id,
    "class_id": AttendanceRecord.class_id,
    "status": AttendanceRecord.status,
    "marked_at": AttendanceRecord.marked_at,
    "created_at": AttendanceRecord.created_at,
}


def record_conditions(filters: AttendanceFilters) -> list:
    conditions = []

    if not filters.include_deleted:
        conditions.append(AttendanceRecord.deleted_at.is_(None))

    if filters.attendance_date:
        conditions.append(AttendanceRecord.attendance_date == filters.attendance_date)
    if filters.start_date:
        conditions.append(AttendanceRecord.attendance_date >= filters.start_date)
    if filters.end_date:
        conditions.append(AttendanceRecord.attendance_date <= filters.end_date)

    if filters.school_id is not None:
        conditions.append(AttendanceRecord.school_id == filters.school_id)
    if filters.class_id is not None:
        conditions.append(AttendanceRecord.class_id == filters.class_id)
    if filters.student_id is not None:
        conditions.append(AttendanceRecord.student_id == filters.student_id)
    if filters.subject_id is not None:
        conditions.append(AttendanceRecord.subject_id == filters.subject_id)
    if filters.teacher_id is not None:
        conditions.append(AttendanceRecord.teacher_id == filters.teacher_id)
    if filters.academic_year_id is not None:
        conditions.append(AttendanceRecord.academic_year_id == filters.academic_year_id)
    if filters.status is not None:
        conditions.append(AttendanceRecord.status == filters.status.value)
    if filters.verified is not None:
        conditions.append(AttendanceRecord.is_verified == filters.verified)

    return conditions


@db_operation
async def get_attendance_records(
    session: AsyncSession, filters: AttendanceFilters
) -> Tuple[List[AttendanceRecord], int]:
    """Filtered, sorted page of records plus the total match count"""
    sort_column = SORTABLE_FIELDS.get(filters.sort_by)
    if sort_column is None:
        raise ValidationError(
            f"Cannot sort by '{filters.sort_by}'",
            field="sort_by",
            details={"allowed": sorted(SORTABLE_FIELDS)},
        )

    conditions = record_conditions(filters)

    count_result = await session.execute(
        select(func.count(AttendanceRecord.id)).where(*conditions)
    )
    total = count_result.scalar()

    order = sort_column.asc() if filters.sort_order == SortOrder.ASC else sort_column.desc()
    query = (
        select(AttendanceRecord)
        .where(*conditions)
        .order_by(order, AttendanceRecord.id)
        .offset((filters.page - 1) * filters.page_size)
        .limit(filters.page_size)
    )
    result = await session.execute(query)
    return result.scalars().all(), total


@db_operation
async def get_attendance_statistics(
    session: AsyncSession, filters: AttendanceFilters
) -> AttendanceStatistics:
    conditions = record_conditions(filters)

    def count_status(status: str):
        return func.sum(case((AttendanceRecord.status == status, 1), else_=0))

    result = await session.execute(
        select(
            func.count(AttendanceRecord.id),
            count_status("present"),
            count_status("absent"),
            count_status("late"),
            count_status("half_day"),
            count_status("sick"),
            func.sum(case((AttendanceRecord.is_excused == True, 1), else_=0)),
        ).where(*conditions)
    )
    total, present, absent, late, half_day, sick, excused = [int(v or 0) for v in result.one()]

    return AttendanceStatistics(
        total_records=total,
        present_count=present,
        absent_count=absent,
        late_count=late,
        attendance_percentage=percentage(present, total),
        punctuality_percentage=percentage(present - late, total),
        status_breakdown=StatusBreakdown(half_day=half_day, sick=sick, excused=excused),
    )
