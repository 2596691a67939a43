from school_attendance.core.database import Base
from .records import (
    AttendanceRecord,
    AttendanceModification,
    build_slot_key,
    is_slot_collision,
)

__all__ = [
    "Base",
    "AttendanceRecord",
    "AttendanceModification",
    "build_slot_key",
    "is_slot_collision",
]
