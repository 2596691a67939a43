"""Attendance Record Model - one student's attendance for one class period"""
from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Text,
    Date,
    Time,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
    JSON,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import relationship

from school_attendance.core.database import Base, utcnow

LIVE_SLOT_INDEX = "uq_attendance_records_live_slot"


def build_slot_key(
    school_id, class_id, student_id, subject_id, attendance_date, period_number
) -> str:
    """Natural key of the slot a record occupies; null subject/period map to 0"""
    return ":".join(
        [
            str(school_id),
            str(class_id),
            str(student_id),
            str(subject_id or 0),
            attendance_date.isoformat(),
            str(period_number or 0),
        ]
    )


def is_slot_collision(exc: IntegrityError) -> bool:
    """True when the violated constraint is the one-live-record-per-slot index"""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    # PostgreSQL names the index, SQLite names the column
    return LIVE_SLOT_INDEX in message or "attendance_records.slot_key" in message


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True)

    # Scope (reference data lives in external services)
    school_id = Column(BigInteger, nullable=False, index=True)
    class_id = Column(BigInteger, nullable=False)
    student_id = Column(BigInteger, nullable=False, index=True)
    subject_id = Column(BigInteger, nullable=True)
    teacher_id = Column(BigInteger, nullable=False)
    academic_year_id = Column(BigInteger, nullable=False)

    # Period
    attendance_date = Column(Date, nullable=False)
    period_number = Column(Integer, nullable=True)
    period_start_time = Column(Time, nullable=True)
    period_end_time = Column(Time, nullable=True)

    # Status
    status = Column(String(20), nullable=False, default="present")
    check_in_time = Column(Time, nullable=True)
    check_out_time = Column(Time, nullable=True)
    late_minutes = Column(Integer, nullable=False, default=0)

    remarks = Column(Text, nullable=True)
    absence_reason = Column(Text, nullable=True)

    # Excuse
    is_excused = Column(Boolean, nullable=False, default=False)
    excuse_reason = Column(Text, nullable=True)
    excused_by = Column(BigInteger, nullable=True)

    # Entry
    marked_by = Column(BigInteger, nullable=False)
    marked_at = Column(DateTime(timezone=True), nullable=False)
    entry_method = Column(String(20), nullable=False, default="manual")

    # Verification
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_by = Column(BigInteger, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    # Modification tracking
    is_modified = Column(Boolean, nullable=False, default=False)
    last_modified_by = Column(BigInteger, nullable=True)

    slot_key = Column(String(160), nullable=False)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(BigInteger, nullable=True)

    modifications = relationship(
        "AttendanceModification",
        back_populates="attendance",
        order_by="AttendanceModification.id",
        lazy="raise",
        passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # One live record per slot; soft-deleted rows free the slot
        Index(
            LIVE_SLOT_INDEX,
            "slot_key",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_attendance_records_class_date", "class_id", "attendance_date"),
        Index("ix_attendance_records_teacher_date", "teacher_id", "attendance_date"),
        Index("ix_attendance_records_status_date", "status", "attendance_date"),
        Index(
            "ix_attendance_records_summary_key",
            "student_id",
            "class_id",
            "academic_year_id",
            "attendance_date",
        ),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return (
            f"<AttendanceRecord(id={self.id}, student_id={self.student_id}, "
            f"date={self.attendance_date}, period={self.period_number}, status={self.status})>"
        )


class AttendanceModification(Base):
    """Append-only audit entry for a record write"""

    __tablename__ = "attendance_modifications"

    id = Column(Integer, primary_key=True)
    attendance_id = Column(
        Integer,
        ForeignKey("attendance_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = Column(String(30), nullable=False)
    modified_by = Column(BigInteger, nullable=False)
    modified_at = Column(DateTime(timezone=True), nullable=False)
    changes = Column(JSON, nullable=False, default=dict)

    attendance = relationship("AttendanceRecord", back_populates="modifications")

    def __repr__(self):
        return f"<AttendanceModification(id={self.id}, attendance_id={self.attendance_id}, action={self.action})>"
