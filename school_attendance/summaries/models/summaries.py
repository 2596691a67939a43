"""Attendance Summary Model - monthly rollup per student, class and subject"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Text,
    Date,
    DateTime,
    Boolean,
    Numeric,
    Index,
    JSON,
)

from school_attendance.core.database import Base, utcnow


@dataclass(frozen=True)
class SummaryKey:
    """Natural key of a summary row"""

    student_id: int
    class_id: int
    subject_id: Optional[int]
    academic_year_id: int
    month: int
    year: int

    @classmethod
    def from_record(cls, record) -> "SummaryKey":
        return cls(
            student_id=record.student_id,
            class_id=record.class_id,
            subject_id=record.subject_id,
            academic_year_id=record.academic_year_id,
            month=record.attendance_date.month,
            year=record.attendance_date.year,
        )

    @property
    def value(self) -> str:
        subject = "-" if self.subject_id is None else str(self.subject_id)
        return (
            f"{self.student_id}:{self.class_id}:{subject}:"
            f"{self.academic_year_id}:{self.year:04d}-{self.month:02d}"
        )


class AttendanceSummary(Base):
    __tablename__ = "attendance_summaries"

    id = Column(Integer, primary_key=True)

    summary_key = Column(String(120), nullable=False, unique=True)
    school_id = Column(BigInteger, nullable=True, index=True)
    student_id = Column(BigInteger, nullable=False, index=True)
    class_id = Column(BigInteger, nullable=False)
    subject_id = Column(BigInteger, nullable=True)
    academic_year_id = Column(BigInteger, nullable=False)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)

    # Counts
    total_working_days = Column(Integer, nullable=False, default=0)
    total_present_days = Column(Integer, nullable=False, default=0)
    total_absent_days = Column(Integer, nullable=False, default=0)
    total_late_days = Column(Integer, nullable=False, default=0)
    total_half_days = Column(Integer, nullable=False, default=0)
    total_sick_days = Column(Integer, nullable=False, default=0)
    total_excused_days = Column(Integer, nullable=False, default=0)

    # Derived metrics
    attendance_percentage = Column(Numeric(5, 2, asdecimal=False), nullable=False, default=0)
    punctuality_percentage = Column(Numeric(5, 2, asdecimal=False), nullable=False, default=0)
    consecutive_absent_days = Column(Integer, nullable=False, default=0)
    total_late_minutes = Column(Integer, nullable=False, default=0)
    weekly_breakdown = Column(JSON, nullable=False, default=list)

    # Threshold
    is_below_minimum = Column(Boolean, nullable=False, default=False)
    minimum_required_percentage = Column(
        Numeric(5, 2, asdecimal=False), nullable=False, default=75
    )
    alert_sent = Column(Boolean, nullable=False, default=False)
    alert_sent_date = Column(Date, nullable=True)

    remarks = Column(Text, nullable=True)

    calculated_at = Column(DateTime(timezone=True), nullable=False)
    calculated_by = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_attendance_summaries_period", "year", "month"),
        Index(
            "ix_attendance_summaries_below_minimum", "is_below_minimum", "alert_sent"
        ),
        Index("ix_attendance_summaries_class", "class_id", "academic_year_id"),
    )

    @property
    def key(self) -> SummaryKey:
        return SummaryKey(
            student_id=self.student_id,
            class_id=self.class_id,
            subject_id=self.subject_id,
            academic_year_id=self.academic_year_id,
            month=self.month,
            year=self.year,
        )

    def __repr__(self):
        return (
            f"<AttendanceSummary(id={self.id}, key={self.summary_key}, "
            f"attendance={self.attendance_percentage}, below_minimum={self.is_below_minimum})>"
        )
