from .summaries import AttendanceSummary, SummaryKey

__all__ = [
    "AttendanceSummary",
    "SummaryKey",
]
