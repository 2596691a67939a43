import calendar
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from school_attendance.summaries.services.aggregation import attendance_grade


class SummaryRead(BaseModel):
    id: int
    summary_key: str
    school_id: Optional[int] = None
    student_id: int
    class_id: int
    subject_id: Optional[int] = None
    academic_year_id: int
    month: int
    year: int

    total_working_days: int
    total_present_days: int
    total_absent_days: int
    total_late_days: int
    total_half_days: int
    total_sick_days: int
    total_excused_days: int

    attendance_percentage: float
    punctuality_percentage: float
    consecutive_absent_days: int
    total_late_minutes: int
    weekly_breakdown: List[Dict[str, Any]] = Field(default_factory=list)

    is_below_minimum: bool
    minimum_required_percentage: float
    alert_sent: bool
    alert_sent_date: Optional[date] = None

    remarks: Optional[str] = None
    calculated_at: datetime
    calculated_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def attendance_grade(self) -> str:
        return attendance_grade(self.attendance_percentage)

    @computed_field
    @property
    def punctuality_grade(self) -> str:
        return attendance_grade(self.punctuality_percentage)

    @computed_field
    @property
    def month_name(self) -> str:
        return calendar.month_name[self.month] if 1 <= self.month <= 12 else "Unknown"


class SummaryFilters(BaseModel):
    """Filters shared by summary listings, scans and reports"""

    school_id: Optional[int] = None
    class_id: Optional[int] = None
    student_id: Optional[int] = None
    subject_id: Optional[int] = None
    academic_year_id: Optional[int] = None
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = Field(None, ge=2000, le=2100)
    below_minimum: Optional[bool] = None
    alert_sent: Optional[bool] = None


class CalculateSummaryRequest(BaseModel):
    student_id: int = Field(..., gt=0)
    class_id: int = Field(..., gt=0)
    subject_id: Optional[int] = Field(None, gt=0)
    academic_year_id: int = Field(..., gt=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    minimum_required_percentage: Optional[float] = Field(None, ge=0, le=100)


class RecalculateRequest(BaseModel):
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    school_id: Optional[int] = Field(None, gt=0)
    class_id: Optional[int] = Field(None, gt=0)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class RecalculationError(BaseModel):
    summary_key: str
    message: str


class RecalculationResult(BaseModel):
    month: int
    year: int
    total_keys: int
    recalculated_count: int
    below_minimum_count: int
    error_count: int
    errors: List[RecalculationError] = Field(default_factory=list)
    cancelled: bool = False
    cancel_reason: Optional[str] = None


class AlertFailure(BaseModel):
    summary_id: int
    student_id: int
    message: str


class AlertDispatchResult(BaseModel):
    scanned_count: int
    sent_count: int
    skipped_count: int
    failed_count: int
    sent_summary_ids: List[int] = Field(default_factory=list)
    failures: List[AlertFailure] = Field(default_factory=list)


class SummaryListResponse(BaseModel):
    summaries: List[SummaryRead]
    total: int


class ReportTotals(BaseModel):
    student_count: int
    summary_count: int
    average_attendance_percentage: float
    below_minimum_count: int


class AttendanceReport(BaseModel):
    generated_at: datetime
    filters: Dict[str, Any]
    totals: ReportTotals
    summaries: List[SummaryRead]
