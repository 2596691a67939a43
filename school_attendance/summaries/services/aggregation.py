"""
Summary metrics computed from a snapshot of attendance records.

Pure functions only: the same records always produce the same metrics,
which is what makes summary recalculation safe to repeat.
"""

from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List

from school_attendance.core.config import MIN_ATTENDANCE_PERCENTAGE

METRIC_FIELDS = (
    "total_working_days",
    "total_present_days",
    "total_absent_days",
    "total_late_days",
    "total_half_days",
    "total_sick_days",
    "total_excused_days",
    "attendance_percentage",
    "punctuality_percentage",
    "consecutive_absent_days",
    "total_late_minutes",
    "is_below_minimum",
    "minimum_required_percentage",
    "weekly_breakdown",
)


@dataclass
class SummaryMetrics:
    total_working_days: int = 0
    total_present_days: int = 0
    total_absent_days: int = 0
    total_late_days: int = 0
    total_half_days: int = 0
    total_sick_days: int = 0
    total_excused_days: int = 0
    attendance_percentage: float = 0.0
    punctuality_percentage: float = 0.0
    consecutive_absent_days: int = 0
    total_late_minutes: int = 0
    is_below_minimum: bool = False
    minimum_required_percentage: float = MIN_ATTENDANCE_PERCENTAGE
    weekly_breakdown: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _status(record) -> str:
    return getattr(record.status, "value", record.status)


def percentage(part: int, total: int) -> float:
    """part / total * 100 rounded to 2 places; 0 for an empty period"""
    if total <= 0:
        return 0.0
    return round(part / total * 100, 2)


def chronological(records: Iterable) -> List:
    """Records by date, then period number (unnumbered periods first)"""
    return sorted(records, key=lambda r: (r.attendance_date, r.period_number or 0))


def longest_absent_streak(records: Iterable) -> int:
    """Longest run of consecutive absent records in chronological order"""
    longest = 0
    current = 0
    for record in chronological(records):
        if _status(record) == "absent":
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def weekly_breakdown(records: Iterable) -> List[Dict[str, Any]]:
    weeks: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for record in chronological(records):
        iso_year, iso_week, _ = record.attendance_date.isocalendar()
        label = f"{iso_year}-W{iso_week:02d}"
        week = weeks.setdefault(
            label, {"week": label, "total": 0, "present": 0, "absent": 0, "late": 0}
        )
        week["total"] += 1
        status = _status(record)
        if status in ("present", "absent", "late"):
            week[status] += 1

    for week in weeks.values():
        week["attendance_percentage"] = percentage(week["present"], week["total"])

    return list(weeks.values())


def compute_summary_metrics(
    records: Iterable, minimum_required_percentage: float = None
) -> SummaryMetrics:
    """
    Roll a period's records up into summary metrics.

    Every record counts toward total_working_days, excused ones included.
    A record is an excused day when it is flagged as excused or carries the
    excused status. Percentages are rounded to 2 places before the
    below-minimum comparison, so the stored flag always agrees with the
    stored percentage.
    """
    records = list(records)
    if minimum_required_percentage is None:
        minimum_required_percentage = MIN_ATTENDANCE_PERCENTAGE

    counts = {status: 0 for status in ("present", "absent", "late", "half_day", "sick")}
    excused = 0
    late_minutes = 0

    for record in records:
        status = _status(record)
        if status in counts:
            counts[status] += 1
        if record.is_excused or status == "excused":
            excused += 1
        late_minutes += record.late_minutes or 0

    total = len(records)
    attendance = percentage(counts["present"], total)
    punctuality = percentage(counts["present"] - counts["late"], total)

    return SummaryMetrics(
        total_working_days=total,
        total_present_days=counts["present"],
        total_absent_days=counts["absent"],
        total_late_days=counts["late"],
        total_half_days=counts["half_day"],
        total_sick_days=counts["sick"],
        total_excused_days=excused,
        attendance_percentage=attendance,
        punctuality_percentage=punctuality,
        consecutive_absent_days=longest_absent_streak(records),
        total_late_minutes=late_minutes,
        is_below_minimum=attendance < float(minimum_required_percentage),
        minimum_required_percentage=float(minimum_required_percentage),
        weekly_breakdown=weekly_breakdown(records),
    )


def attendance_grade(value) -> str:
    """Letter-style band used on summaries and reports"""
    value = float(value or 0)
    if value >= 95:
        return "Excellent"
    if value >= 85:
        return "Good"
    if value >= 75:
        return "Satisfactory"
    if value >= 65:
        return "Below Average"
    return "Poor"
