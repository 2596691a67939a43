from .summaries import (
    SummaryRead,
    SummaryFilters,
    CalculateSummaryRequest,
    RecalculateRequest,
    RecalculationError,
    RecalculationResult,
    AlertFailure,
    AlertDispatchResult,
    SummaryListResponse,
    ReportTotals,
    AttendanceReport,
)

__all__ = [
    "SummaryRead",
    "SummaryFilters",
    "CalculateSummaryRequest",
    "RecalculateRequest",
    "RecalculationError",
    "RecalculationResult",
    "AlertFailure",
    "AlertDispatchResult",
    "SummaryListResponse",
    "ReportTotals",
    "AttendanceReport",
]
