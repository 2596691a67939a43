from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from school_attendance.core.config import BULK_MAX_ITEMS, MAX_LATE_MINUTES, MAX_PERIOD_NUMBER
from school_attendance.core.exceptions import ValidationError
from school_attendance.core.validations import (
    derive_late_minutes,
    validate_attendance_state,
    validate_not_future,
)


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    HALF_DAY = "half_day"
    SICK = "sick"
    EXCUSED = "excused"


class EntryMethod(str, Enum):
    MANUAL = "manual"
    BIOMETRIC = "biometric"
    RFID = "rfid"
    MOBILE_APP = "mobile_app"
    BULK_IMPORT = "bulk_import"


class ModificationAction(str, Enum):
    UPDATE = "update"
    EXCUSE = "excuse"
    VERIFY_OVERRIDE = "verify_override"
    DELETE = "delete"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AttendanceCreate(BaseModel):
    """Schema for marking one student for one period"""

    school_id: int = Field(..., gt=0)
    class_id: int = Field(..., gt=0)
    student_id: int = Field(..., gt=0)
    subject_id: Optional[int] = Field(None, gt=0)
    teacher_id: int = Field(..., gt=0)
    academic_year_id: int = Field(..., gt=0)

    attendance_date: date
    period_number: Optional[int] = Field(None, ge=1, le=MAX_PERIOD_NUMBER)
    period_start_time: Optional[time] = None
    period_end_time: Optional[time] = None

    status: AttendanceStatus = AttendanceStatus.PRESENT
    check_in_time: Optional[time] = None
    check_out_time: Optional[time] = None
    late_minutes: Optional[int] = Field(
        None, ge=0, le=MAX_LATE_MINUTES, description="Derived from check-in when omitted"
    )

    remarks: Optional[str] = Field(None, max_length=500)
    absence_reason: Optional[str] = Field(None, max_length=500)

    is_excused: bool = False
    excuse_reason: Optional[str] = Field(None, max_length=500)
    excused_by: Optional[int] = Field(None, gt=0)

    entry_method: EntryMethod = EntryMethod.MANUAL

    model_config = ConfigDict(str_strip_whitespace=True)

    @model_validator(mode="after")
    def validate_record(self):
        self.late_minutes = derive_late_minutes(
            self.status, self.late_minutes, self.check_in_time, self.period_start_time
        )
        validate_not_future(self.attendance_date)
        validate_attendance_state(self.model_dump())
        return self


# Columns a patch may change but never set to null
NON_NULLABLE_PATCH_FIELDS = ("attendance_date", "status", "late_minutes", "entry_method")


class AttendanceUpdate(BaseModel):
    """
    Patch for an existing record.

    expected_version is the version the caller last read; the write is
    rejected with a conflict if the stored record has moved on.
    """

    expected_version: int = Field(..., ge=1)

    subject_id: Optional[int] = Field(None, gt=0)
    attendance_date: Optional[date] = None
    period_number: Optional[int] = Field(None, ge=1, le=MAX_PERIOD_NUMBER)
    period_start_time: Optional[time] = None
    period_end_time: Optional[time] = None

    status: Optional[AttendanceStatus] = None
    check_in_time: Optional[time] = None
    check_out_time: Optional[time] = None
    late_minutes: Optional[int] = Field(None, ge=0, le=MAX_LATE_MINUTES)

    remarks: Optional[str] = Field(None, max_length=500)
    absence_reason: Optional[str] = Field(None, max_length=500)
    entry_method: Optional[EntryMethod] = None

    model_config = ConfigDict(str_strip_whitespace=True)

    @model_validator(mode="after")
    def reject_cleared_required_fields(self):
        for field in NON_NULLABLE_PATCH_FIELDS:
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValidationError(f"{field} cannot be cleared", field=field)
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually sent, enums flattened to values"""
        data = self.model_dump(exclude_unset=True, exclude={"expected_version"})
        return {k: getattr(v, "value", v) for k, v in data.items()}


class VerifyRequest(BaseModel):
    override: bool = Field(
        False, description="Replace an existing verification by another actor"
    )


class ExcuseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ModificationRead(BaseModel):
    id: int
    action: ModificationAction
    modified_by: int
    modified_at: datetime
    changes: Dict[str, Any]

    model_config = ConfigDict(from_attributes=True)


class AttendanceRead(BaseModel):
    id: int
    school_id: int
    class_id: int
    student_id: int
    subject_id: Optional[int] = None
    teacher_id: int
    academic_year_id: int

    attendance_date: date
    period_number: Optional[int] = None
    period_start_time: Optional[time] = None
    period_end_time: Optional[time] = None

    status: AttendanceStatus
    check_in_time: Optional[time] = None
    check_out_time: Optional[time] = None
    late_minutes: int

    remarks: Optional[str] = None
    absence_reason: Optional[str] = None

    is_excused: bool
    excuse_reason: Optional[str] = None
    excused_by: Optional[int] = None

    marked_by: int
    marked_at: datetime
    entry_method: EntryMethod

    is_verified: bool
    verified_by: Optional[int] = None
    verified_at: Optional[datetime] = None

    is_modified: bool
    last_modified_by: Optional[int] = None

    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceDetail(AttendanceRead):
    """Single record with its audit trail"""

    modification_history: List[ModificationRead] = Field(
        default_factory=list, validation_alias="modifications"
    )


class AttendanceListResponse(BaseModel):
    records: List[AttendanceRead]
    total: int
    page: int
    size: int
    pages: int


class AttendanceFilters(BaseModel):
    """Filter set for record queries"""

    attendance_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    class_id: Optional[int] = None
    student_id: Optional[int] = None
    subject_id: Optional[int] = None
    teacher_id: Optional[int] = None
    status: Optional[AttendanceStatus] = None
    academic_year_id: Optional[int] = None
    school_id: Optional[int] = None
    verified: Optional[bool] = None
    include_deleted: bool = False

    sort_by: str = "attendance_date"
    sort_order: SortOrder = SortOrder.DESC
    page: int = Field(1, ge=1)
    page_size: int = Field(15, ge=1, le=100)

    @model_validator(mode="after")
    def validate_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


# Bulk


class BulkAttendanceCreate(BaseModel):
    """
    Header shared by every item plus the per-student rows.

    Items stay loosely typed here: each one is validated on its own so
    a malformed row turns into an error entry instead of rejecting the
    whole request.
    """

    school_id: int = Field(..., gt=0)
    class_id: int = Field(..., gt=0)
    teacher_id: int = Field(..., gt=0)
    academic_year_id: int = Field(..., gt=0)
    attendance_date: date
    subject_id: Optional[int] = Field(None, gt=0)
    period_number: Optional[int] = Field(None, ge=1, le=MAX_PERIOD_NUMBER)
    period_start_time: Optional[time] = None
    period_end_time: Optional[time] = None
    entry_method: EntryMethod = EntryMethod.BULK_IMPORT

    items: List[Dict[str, Any]] = Field(..., min_length=1)
    timeout_seconds: Optional[float] = Field(None, gt=0)

    @field_validator("items")
    @classmethod
    def validate_items_size(cls, v):
        if len(v) > BULK_MAX_ITEMS:
            raise ValueError(f"A bulk request may contain at most {BULK_MAX_ITEMS} items")
        return v

    def header(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"items", "timeout_seconds"}, mode="python")


class BulkItemError(BaseModel):
    index: int
    student_id: Optional[Any] = None
    error_code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class BulkStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class BulkAttendanceResult(BaseModel):
    status: BulkStatus
    total_items: int
    processed_count: int
    created_count: int
    error_count: int
    created: List[AttendanceRead]
    errors: List[BulkItemError]
    cancelled: bool = False
    cancel_reason: Optional[str] = None


# Statistics


class StatusBreakdown(BaseModel):
    half_day: int = 0
    sick: int = 0
    excused: int = 0


class AttendanceStatistics(BaseModel):
    total_records: int
    present_count: int
    absent_count: int
    late_count: int
    attendance_percentage: float
    punctuality_percentage: float
    status_breakdown: StatusBreakdown
