from .records import (
    AttendanceStatus,
    EntryMethod,
    ModificationAction,
    SortOrder,
    AttendanceCreate,
    AttendanceUpdate,
    VerifyRequest,
    ExcuseRequest,
    ModificationRead,
    AttendanceRead,
    AttendanceDetail,
    AttendanceListResponse,
    AttendanceFilters,
    BulkAttendanceCreate,
    BulkItemError,
    BulkStatus,
    BulkAttendanceResult,
    StatusBreakdown,
    AttendanceStatistics,
)

__all__ = [
    "AttendanceStatus",
    "EntryMethod",
    "ModificationAction",
    "SortOrder",
    "AttendanceCreate",
    "AttendanceUpdate",
    "VerifyRequest",
    "ExcuseRequest",
    "ModificationRead",
    "AttendanceRead",
    "AttendanceDetail",
    "AttendanceListResponse",
    "AttendanceFilters",
    "BulkAttendanceCreate",
    "BulkItemError",
    "BulkStatus",
    "BulkAttendanceResult",
    "StatusBreakdown",
    "AttendanceStatistics",
]
