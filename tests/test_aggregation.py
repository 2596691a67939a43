from datetime import date, timedelta
from types import SimpleNamespace

from school_attendance.summaries.services.aggregation import (
    attendance_grade,
    compute_summary_metrics,
    longest_absent_streak,
    percentage,
)


def rec(day, status="present", period=1, is_excused=False, late_minutes=0):
    return SimpleNamespace(
        attendance_date=date(2025, 9, 1) + timedelta(days=day),
        period_number=period,
        status=status,
        is_excused=is_excused,
        late_minutes=late_minutes,
    )


def test_fifteen_of_twenty_present_is_seventy_five_percent():
    records = [rec(i) for i in range(15)] + [rec(15 + i, "absent") for i in range(5)]

    metrics = compute_summary_metrics(records, 75)

    assert metrics.total_working_days == 20
    assert metrics.total_present_days == 15
    assert metrics.attendance_percentage == 75.00
    assert metrics.is_below_minimum is False


def test_five_absences_then_present_is_a_streak_of_five():
    records = [rec(i, "absent") for i in range(5)] + [rec(5, "present")]

    assert compute_summary_metrics(records).consecutive_absent_days == 5


def test_streak_is_longest_run_not_the_one_at_period_end():
    statuses = ["absent", "absent", "absent", "present", "absent"]
    records = [rec(i, s) for i, s in enumerate(statuses)]

    assert longest_absent_streak(records) == 3


def test_streak_orders_input_chronologically():
    records = [rec(2, "absent"), rec(0, "absent"), rec(1, "present"), rec(3, "absent")]

    assert longest_absent_streak(records) == 2


def test_streak_breaks_date_ties_by_period():
    records = [
        rec(0, "absent", period=2),
        rec(0, "present", period=1),
        rec(1, "absent", period=1),
    ]

    assert longest_absent_streak(records) == 2


def test_empty_period_has_zero_percentages():
    metrics = compute_summary_metrics([], 75)

    assert metrics.total_working_days == 0
    assert metrics.attendance_percentage == 0
    assert metrics.punctuality_percentage == 0
    assert metrics.is_below_minimum is True
    assert metrics.weekly_breakdown == []


def test_excused_days_stay_in_the_denominator():
    records = [rec(0), rec(1), rec(2), rec(3, "excused")]

    metrics = compute_summary_metrics(records)

    assert metrics.total_working_days == 4
    assert metrics.total_excused_days == 1
    assert metrics.attendance_percentage == 75.0


def test_excused_flag_counts_as_excused_day():
    records = [rec(0, "absent", is_excused=True), rec(1, "sick", is_excused=True), rec(2)]

    metrics = compute_summary_metrics(records)

    assert metrics.total_excused_days == 2
    assert metrics.total_absent_days == 1
    assert metrics.total_sick_days == 1


def test_punctuality_subtracts_late_from_present():
    records = [rec(i) for i in range(6)] + [
        rec(6, "late", late_minutes=10),
        rec(7, "late", late_minutes=5),
        rec(8, "half_day"),
        rec(9, "absent"),
    ]

    metrics = compute_summary_metrics(records)

    assert metrics.attendance_percentage == 60.0
    assert metrics.punctuality_percentage == 40.0
    assert metrics.total_late_days == 2
    assert metrics.total_late_minutes == 15
    assert metrics.total_half_days == 1


def test_percentages_round_to_two_places():
    assert percentage(2, 3) == 66.67
    assert percentage(1, 3) == 33.33
    assert percentage(5, 0) == 0


def test_below_minimum_compares_rounded_percentage():
    records = [rec(0), rec(1), rec(2, "absent")]

    assert compute_summary_metrics(records, 66.67).is_below_minimum is False
    assert compute_summary_metrics(records, 66.68).is_below_minimum is True


def test_same_records_give_identical_metrics():
    records = [rec(i, "absent" if i % 3 == 0 else "present") for i in range(12)]

    first = compute_summary_metrics(records, 75).as_dict()
    second = compute_summary_metrics(list(reversed(records)), 75).as_dict()

    assert first == second


def test_weekly_breakdown_groups_by_iso_week():
    # 2025-09-01 is a Monday
    records = [rec(0), rec(1, "absent"), rec(7, "late"), rec(8)]

    weeks = compute_summary_metrics(records).weekly_breakdown

    assert [w["week"] for w in weeks] == ["2025-W36", "2025-W37"]
    assert weeks[0]["present"] == 1 and weeks[0]["absent"] == 1
    assert weeks[0]["attendance_percentage"] == 50.0
    assert weeks[1]["late"] == 1 and weeks[1]["total"] == 2


def test_attendance_grade_bands():
    assert attendance_grade(95) == "Excellent"
    assert attendance_grade(85) == "Good"
    assert attendance_grade(75) == "Satisfactory"
    assert attendance_grade(65) == "Below Average"
    assert attendance_grade(64.99) == "Poor"
    assert attendance_grade(None) == "Poor"
