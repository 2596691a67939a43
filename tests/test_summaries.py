from datetime import date

import pytest
from sqlalchemy import func, select

from school_attendance.attendance.crud import records as records_crud
from school_attendance.attendance.crud.records import (
    create_attendance,
    soft_delete_attendance,
    update_attendance,
)
from school_attendance.attendance.schemas import AttendanceUpdate
from school_attendance.core.context import OperationContext
from school_attendance.core.exceptions import AuthorizationError, ValidationError
from school_attendance.summaries.crud.summaries import (
    calculate_summary,
    get_summary_by_key,
    keys_for_record,
    recalculate_period,
)
from school_attendance.summaries.models import AttendanceSummary, SummaryKey
from school_attendance.summaries.services.aggregation import METRIC_FIELDS
from school_attendance.summaries.services.threshold_monitor import claim_alert

from conftest import ACADEMIC_YEAR_ID, CLASS_ID, make_attendance


def key(student_id=1, subject_id=3, month=9, year=2025):
    return SummaryKey(
        student_id=student_id,
        class_id=CLASS_ID,
        subject_id=subject_id,
        academic_year_id=ACADEMIC_YEAR_ID,
        month=month,
        year=year,
    )


async def mark(session, actor, day, status="present", **overrides):
    if status == "absent":
        overrides.setdefault("check_in_time", None)
    return await create_attendance(
        session,
        make_attendance(attendance_date=date(2025, 9, day), status=status, **overrides),
        actor,
    )


async def calculate(session, actor, summary_key, **kwargs):
    return await calculate_summary(
        session,
        summary_key.student_id,
        summary_key.class_id,
        summary_key.subject_id,
        summary_key.academic_year_id,
        summary_key.month,
        summary_key.year,
        actor,
        **kwargs,
    )


def snapshot(summary):
    columns = AttendanceSummary.__table__.columns.keys()
    return {name: getattr(summary, name) for name in columns}


async def test_summary_is_written_after_marking(session, teacher):
    for day in range(1, 16):
        await mark(session, teacher, day)
    for day in range(16, 21):
        await mark(session, teacher, day, "absent")

    summary = await get_summary_by_key(session, key())

    assert summary.total_working_days == 20
    assert summary.total_present_days == 15
    assert summary.total_absent_days == 5
    assert summary.attendance_percentage == 75.0
    assert summary.consecutive_absent_days == 5
    assert summary.is_below_minimum is False
    assert summary.school_id == 1


async def test_recalculating_unchanged_ledger_leaves_row_identical(session, teacher, admin):
    for day in range(1, 4):
        await mark(session, teacher, day)
    await mark(session, teacher, 4, "absent")

    first = snapshot(await calculate(session, admin, key()))
    second = snapshot(await calculate(session, admin, key()))

    assert first == second
    assert first["calculated_by"] == teacher.id

    count = await session.scalar(
        select(func.count(AttendanceSummary.id)).where(
            AttendanceSummary.summary_key == key().value
        )
    )
    assert count == 1


async def test_recalculation_after_change_updates_row(session, teacher, admin):
    record = await mark(session, teacher, 1)
    await mark(session, teacher, 2)

    await update_attendance(
        session,
        record.id,
        AttendanceUpdate(expected_version=1, status="absent", check_in_time=None),
        admin,
    )

    summary = await get_summary_by_key(session, key())
    assert summary.attendance_percentage == 50.0
    assert summary.calculated_by == admin.id


async def test_deleted_records_do_not_count(session, gate, teacher, admin):
    await mark(session, teacher, 1)
    absent = await mark(session, teacher, 2, "absent")

    await soft_delete_attendance(session, absent.id, admin, gate)

    summary = await get_summary_by_key(session, key())
    assert summary.total_working_days == 1
    assert summary.attendance_percentage == 100.0


async def test_all_subjects_summary_spans_subjects(session, teacher):
    await mark(session, teacher, 1, subject_id=3)
    await mark(session, teacher, 1, "absent", subject_id=4, period_number=2)

    math_only = await get_summary_by_key(session, key(subject_id=3))
    overall = await get_summary_by_key(session, key(subject_id=None))

    assert math_only.total_working_days == 1
    assert overall.total_working_days == 2
    assert overall.attendance_percentage == 50.0


async def test_empty_period_summary(session, admin):
    summary = await calculate(session, admin, key(student_id=42))

    assert summary.total_working_days == 0
    assert summary.attendance_percentage == 0
    assert summary.school_id is None


async def test_invalid_month_is_rejected(session, admin):
    with pytest.raises(ValidationError):
        await calculate(session, admin, key(month=13))


async def test_explicit_minimum_is_stored(session, teacher, admin):
    for day in range(1, 5):
        await mark(session, teacher, day)
    await mark(session, teacher, 5, "absent")

    summary = await calculate(session, admin, key(), minimum_required_percentage=90)

    assert summary.minimum_required_percentage == 90.0
    assert summary.attendance_percentage == 80.0
    assert summary.is_below_minimum is True


async def test_alert_flag_survives_while_still_below_minimum(session, teacher):
    await mark(session, teacher, 1)
    await mark(session, teacher, 2, "absent")
    summary = await get_summary_by_key(session, key())
    assert summary.is_below_minimum is True

    assert await claim_alert(session, summary.id, date(2025, 9, 3)) is True

    await mark(session, teacher, 3, "absent")
    still_low = await get_summary_by_key(session, key())
    assert still_low.attendance_percentage == 33.33
    assert still_low.alert_sent is True
    assert still_low.alert_sent_date == date(2025, 9, 3)

    for day in range(4, 12):
        await mark(session, teacher, day)
    recovered = await get_summary_by_key(session, key())
    assert recovered.is_below_minimum is False
    assert recovered.alert_sent is False
    assert recovered.alert_sent_date is None


async def test_calculation_invalidates_cached_summary(session, teacher, admin, cache):
    await mark(session, teacher, 1)
    cache.set(key().value, "stale")

    await calculate(session, admin, key(), cache=cache)

    assert cache.get(key().value) is None


def test_record_feeds_subject_and_overall_keys():
    record = make_attendance(attendance_date=date(2025, 9, 4))

    keys = keys_for_record(record)

    assert keys == {key(), key(subject_id=None)}
    assert key(subject_id=None).value == "1:7:-:2025:2025-09"


async def test_recalculate_period_covers_every_key(session, gate, teacher, admin, monkeypatch):
    monkeypatch.setattr(records_crud, "AUTO_RECALCULATE_SUMMARIES", False)
    await mark(session, teacher, 1, student_id=1)
    await mark(session, teacher, 1, "absent", student_id=2)
    await mark(session, teacher, 2, student_id=2)

    assert await session.scalar(select(func.count(AttendanceSummary.id))) == 0

    result = await recalculate_period(session, 9, 2025, admin, gate, school_id=1)

    assert result.total_keys == 4
    assert result.recalculated_count == 4
    assert result.below_minimum_count == 2
    assert result.cancelled is False
    assert await session.scalar(select(func.count(AttendanceSummary.id))) == 4

    student_two = await get_summary_by_key(session, key(student_id=2))
    assert student_two.attendance_percentage == 50.0


async def test_recalculate_period_stops_when_cancelled(
    session, gate, teacher, admin, monkeypatch
):
    monkeypatch.setattr(records_crud, "AUTO_RECALCULATE_SUMMARIES", False)
    await mark(session, teacher, 1)
    context = OperationContext()
    context.cancel()

    result = await recalculate_period(session, 9, 2025, admin, gate, context=context)

    assert result.total_keys == 2
    assert result.recalculated_count == 0
    assert result.cancelled is True
    assert result.cancel_reason == "cancelled"


async def test_recalculate_period_requires_capability(session, gate, teacher):
    with pytest.raises(AuthorizationError):
        await recalculate_period(session, 9, 2025, teacher, gate)


def test_metric_fields_match_summary_columns():
    columns = set(AttendanceSummary.__table__.columns.keys())

    assert set(METRIC_FIELDS) <= columns
