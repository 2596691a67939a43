from datetime import date, time, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from school_attendance.attendance.schemas import AttendanceUpdate
from school_attendance.core.exceptions import ValidationError
from school_attendance.core.validations import (
    derive_late_minutes,
    minutes_between,
    validate_attendance_state,
)

from conftest import make_attendance


def state(**overrides):
    base = {
        "status": "present",
        "entry_method": "manual",
        "check_in_time": None,
        "check_out_time": None,
        "period_start_time": None,
        "period_end_time": None,
        "period_number": 1,
        "late_minutes": 0,
        "is_excused": False,
        "excuse_reason": None,
        "excused_by": None,
    }
    base.update(overrides)
    return base


def test_absent_record_cannot_have_check_in():
    with pytest.raises(ValidationError) as exc:
        validate_attendance_state(state(status="absent", check_in_time=time(8, 0)))

    assert exc.value.details["field"] == "check_in_time"


def test_late_minutes_require_late_status():
    with pytest.raises(ValidationError):
        validate_attendance_state(state(status="present", late_minutes=5))

    validate_attendance_state(state(status="late", late_minutes=5))


def test_late_minutes_are_capped():
    with pytest.raises(ValidationError):
        validate_attendance_state(state(status="late", late_minutes=481))


def test_excused_record_needs_reason_or_actor():
    with pytest.raises(ValidationError):
        validate_attendance_state(state(is_excused=True))

    validate_attendance_state(state(is_excused=True, excused_by=9))
    validate_attendance_state(state(is_excused=True, excuse_reason="Doctor's note"))


def test_time_ranges_must_move_forward():
    with pytest.raises(ValidationError):
        validate_attendance_state(
            state(check_in_time=time(9, 0), check_out_time=time(8, 0))
        )
    with pytest.raises(ValidationError):
        validate_attendance_state(
            state(period_start_time=time(9, 0), period_end_time=time(9, 0))
        )


def test_unknown_status_is_rejected():
    with pytest.raises(ValidationError):
        validate_attendance_state(state(status="vacation"))


def test_late_minutes_derived_from_check_in():
    assert minutes_between(time(8, 0), time(8, 12)) == 12
    assert derive_late_minutes("late", None, time(8, 12), time(8, 0)) == 12
    assert derive_late_minutes("late", 3, time(8, 12), time(8, 0)) == 3
    assert derive_late_minutes("present", None, time(8, 12), time(8, 0)) == 0


def test_create_schema_derives_late_minutes():
    data = make_attendance(status="late", check_in_time=time(8, 20))

    assert data.late_minutes == 20


def test_create_schema_rejects_future_date():
    with pytest.raises(ValidationError) as exc:
        make_attendance(attendance_date=date.today() + timedelta(days=1))

    assert exc.value.details["field"] == "attendance_date"


def test_create_schema_rejects_absent_with_times():
    with pytest.raises(ValidationError):
        make_attendance(status="absent")


def test_create_schema_rejects_out_of_range_period():
    with pytest.raises(PydanticValidationError):
        make_attendance(period_number=11)


def test_update_changes_only_sent_fields():
    patch = AttendanceUpdate(expected_version=2, status="late", late_minutes=4)

    assert patch.changes() == {"status": "late", "late_minutes": 4}
