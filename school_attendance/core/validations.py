from datetime import date, datetime, time
from typing import Any, Mapping, Optional

from school_attendance.core.config import MAX_LATE_MINUTES, MAX_PERIOD_NUMBER
from school_attendance.core.exceptions import ValidationError

ATTENDANCE_STATUSES = ("present", "absent", "late", "half_day", "sick", "excused")
ENTRY_METHODS = ("manual", "biometric", "rfid", "mobile_app", "bulk_import")


def _value(v):
    return getattr(v, "value", v)


def minutes_between(start: time, end: time) -> int:
    """Whole minutes from start to end on the same day, never negative"""
    delta = datetime.combine(date.min, end) - datetime.combine(date.min, start)
    return max(int(delta.total_seconds() // 60), 0)


def derive_late_minutes(
    status: Any,
    late_minutes: Optional[int],
    check_in_time: Optional[time],
    period_start_time: Optional[time],
) -> int:
    """Fill late_minutes from the check-in delay when a late mark omits it"""
    if late_minutes is not None:
        return late_minutes

    if _value(status) == "late" and check_in_time and period_start_time:
        return minutes_between(period_start_time, check_in_time)

    return 0


def validate_not_future(attendance_date: date) -> None:
    if attendance_date > date.today():
        raise ValidationError(
            "Attendance date cannot be in the future", field="attendance_date"
        )


def validate_attendance_state(state: Mapping[str, Any]) -> None:
    """
    Check the invariants every stored record must satisfy.

    Runs on create input and on the merged state of an update, so a patch
    cannot produce a combination a direct create would reject.
    """
    status = _value(state.get("status"))
    if status not in ATTENDANCE_STATUSES:
        raise ValidationError(f"Invalid attendance status: {status}", field="status")

    entry_method = _value(state.get("entry_method"))
    if entry_method is not None and entry_method not in ENTRY_METHODS:
        raise ValidationError(
            f"Invalid entry method: {entry_method}", field="entry_method"
        )

    check_in = state.get("check_in_time")
    check_out = state.get("check_out_time")

    if status == "absent" and (check_in or check_out):
        raise ValidationError(
            "Absent records cannot have check-in or check-out times",
            field="check_in_time" if check_in else "check_out_time",
        )

    if check_in and check_out and check_out <= check_in:
        raise ValidationError(
            "Check-out time must be after check-in time", field="check_out_time"
        )

    period_start = state.get("period_start_time")
    period_end = state.get("period_end_time")
    if period_start and period_end and period_end <= period_start:
        raise ValidationError(
            "Period end time must be after period start time", field="period_end_time"
        )

    period_number = state.get("period_number")
    if period_number is not None and not 1 <= period_number <= MAX_PERIOD_NUMBER:
        raise ValidationError(
            f"Period number must be between 1 and {MAX_PERIOD_NUMBER}",
            field="period_number",
        )

    late_minutes = state.get("late_minutes") or 0
    if late_minutes < 0 or late_minutes > MAX_LATE_MINUTES:
        raise ValidationError(
            f"Late minutes must be between 0 and {MAX_LATE_MINUTES}",
            field="late_minutes",
        )
    if late_minutes > 0 and status != "late":
        raise ValidationError(
            "Late minutes are only allowed for late records", field="late_minutes"
        )

    if state.get("is_excused") and not (
        state.get("excuse_reason") or state.get("excused_by")
    ):
        raise ValidationError(
            "Excused records require an excuse reason or the excusing actor",
            field="excuse_reason",
        )
