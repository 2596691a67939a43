import logging
from datetime import date, time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from school_attendance.attendance.models import (
    AttendanceModification,
    AttendanceRecord,
    build_slot_key,
    is_slot_collision,
)
from school_attendance.attendance.schemas import (
    AttendanceCreate,
    AttendanceRead,
    AttendanceUpdate,
    BulkAttendanceCreate,
    BulkAttendanceResult,
    BulkItemError,
    BulkStatus,
    ModificationAction,
)
from school_attendance.core.authorization import (
    AuthorizationGate,
    AuthorizationScope,
    Capability,
    require_capability,
)
from school_attendance.core.config import (
    AUTO_RECALCULATE_SUMMARIES,
    BULK_CHUNK_SIZE,
    BULK_MAX_ITEMS,
    BULK_OPERATION_TIMEOUT_SECONDS,
)
from school_attendance.core.context import OperationContext
from school_attendance.core.database import db_operation, utcnow
from school_attendance.core.exceptions import (
    BaseAppException,
    ConflictError,
    DuplicateAttendanceError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from school_attendance.core.logging_utils import log_business_event
from school_attendance.core.security import Actor
from school_attendance.core.validations import validate_attendance_state
from school_attendance.summaries.crud.summaries import keys_for_record, recalculate_keys
from school_attendance.summaries.models import SummaryKey

logger = logging.getLogger(__name__)

# Fields a record's invariants are checked against
STATE_FIELDS = (
    "status",
    "entry_method",
    "check_in_time",
    "check_out_time",
    "period_start_time",
    "period_end_time",
    "period_number",
    "late_minutes",
    "is_excused",
    "excuse_reason",
    "excused_by",
)

# Bulk header fields an item may not override
BULK_LOCKED_FIELDS = ("school_id", "class_id", "academic_year_id", "teacher_id")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, time)):
        return value.isoformat()
    return value


def _diff(record: AttendanceRecord, changes: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """{field: {from, to}} for every field whose value actually changes"""
    diff = {}
    for field, new_value in changes.items():
        old_value = getattr(record, field)
        if old_value != new_value:
            diff[field] = {"from": _jsonable(old_value), "to": _jsonable(new_value)}
    return diff


def _scope(record: AttendanceRecord) -> AuthorizationScope:
    return AuthorizationScope(school_id=record.school_id, class_id=record.class_id)


def _slot_key_of(record: AttendanceRecord) -> str:
    return build_slot_key(
        record.school_id,
        record.class_id,
        record.student_id,
        record.subject_id,
        record.attendance_date,
        record.period_number,
    )


def _log_modification(
    session: AsyncSession,
    record: AttendanceRecord,
    action: ModificationAction,
    actor: Actor,
    changes: Dict[str, Any],
) -> None:
    session.add(
        AttendanceModification(
            attendance_id=record.id,
            action=action.value,
            modified_by=actor.id,
            modified_at=utcnow(),
            changes=changes,
        )
    )


def _integrity_conflict(exc: IntegrityError, slot_key: str) -> ConflictError:
    if is_slot_collision(exc):
        return DuplicateAttendanceError(slot_key)
    logger.error(f"Attendance write violated a constraint: {exc.orig}")
    return ConflictError("Data integrity constraint violated", reason="integrity")


async def _commit_record_write(
    session: AsyncSession, record: AttendanceRecord, expected_version: int
) -> None:
    """Commit a versioned write; a concurrent writer turns into a conflict"""
    record_id = record.id
    slot_key = record.slot_key
    try:
        await session.commit()
    except StaleDataError:
        await session.rollback()
        raise StaleVersionError("Attendance", record_id, expected_version, None)
    except IntegrityError as e:
        await session.rollback()
        raise _integrity_conflict(e, slot_key) from e


async def _refresh_summaries(
    session: AsyncSession, keys: Iterable[SummaryKey], actor: Actor
) -> None:
    """Bring affected summaries up to date after a committed ledger write"""
    if not AUTO_RECALCULATE_SUMMARIES:
        return

    keys = set(keys)
    try:
        await recalculate_keys(session, keys, actor)
    except SQLAlchemyError as e:
        # The ledger write is already committed; the next recalculation picks it up
        await session.rollback()
        logger.error(
            f"Summary refresh after ledger write failed: {str(e)}",
            extra={"summary_keys": [key.value for key in keys]},
        )


@db_operation
async def get_attendance_by_id(
    session: AsyncSession,
    record_id: int,
    include_deleted: bool = False,
    with_history: bool = False,
) -> AttendanceRecord:
    if record_id <= 0:
        raise ValidationError("Attendance ID must be positive", field="record_id")

    query = select(AttendanceRecord).where(AttendanceRecord.id == record_id)
    if not include_deleted:
        query = query.where(AttendanceRecord.deleted_at.is_(None))
    if with_history:
        query = query.options(selectinload(AttendanceRecord.modifications))

    result = await session.execute(query.execution_options(populate_existing=True))
    record = result.scalar_one_or_none()

    if not record:
        raise NotFoundError("Attendance", str(record_id))

    return record


async def _insert_record(
    session: AsyncSession, data: AttendanceCreate, actor: Actor
) -> AttendanceRecord:
    values = data.model_dump()
    values["status"] = data.status.value
    values["entry_method"] = data.entry_method.value

    record = AttendanceRecord(
        **values,
        marked_by=actor.id,
        marked_at=utcnow(),
        is_verified=False,
        is_modified=False,
    )
    slot_key = _slot_key_of(record)
    record.slot_key = slot_key

    session.add(record)
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise _integrity_conflict(e, slot_key) from e

    return record


@db_operation
async def create_attendance(
    session: AsyncSession, data: AttendanceCreate, actor: Actor
) -> AttendanceRecord:
    """
    Mark one student for one period.

    The live-slot unique index decides between concurrent markers: the
    first commit wins and every other caller gets a ConflictError.
    """
    record = await _insert_record(session, data, actor)

    log_business_event(
        "attendance_marked",
        "attendance",
        record.id,
        {
            "student_id": record.student_id,
            "class_id": record.class_id,
            "attendance_date": record.attendance_date.isoformat(),
            "status": record.status,
            "marked_by": actor.id,
        },
    )

    await _refresh_summaries(session, keys_for_record(record), actor)
    return record


def _bulk_error(index: int, item: Dict[str, Any], exc: Exception) -> BulkItemError:
    student_id = item.get("student_id") if isinstance(item, dict) else None

    if isinstance(exc, PydanticValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()))
        return BulkItemError(
            index=index,
            student_id=student_id,
            error_code="VALIDATION_ERROR",
            message=first.get("msg", "Invalid item"),
            details={"field": field} if field else {},
        )

    return BulkItemError(
        index=index,
        student_id=student_id,
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details,
    )


def _bulk_status(created: int, errors: int, total: int) -> BulkStatus:
    if created == total and errors == 0:
        return BulkStatus.SUCCESS
    if created == 0:
        return BulkStatus.FAILED
    return BulkStatus.PARTIAL


async def bulk_create_attendance(
    session: AsyncSession,
    request: BulkAttendanceCreate,
    actor: Actor,
    gate: AuthorizationGate,
    context: Optional[OperationContext] = None,
) -> BulkAttendanceResult:
    """
    Mark many students for one class session.

    Each item is validated and committed on its own, so one bad row never
    costs the others. Items are worked through in chunks and the context
    is checked before each item; when it trips, the items already
    committed stay and the rest are left unprocessed.
    """
    await require_capability(
        gate,
        actor,
        Capability.BULK_CREATE,
        AuthorizationScope(school_id=request.school_id, class_id=request.class_id),
    )

    if len(request.items) > BULK_MAX_ITEMS:
        raise ValidationError(
            f"A bulk request may contain at most {BULK_MAX_ITEMS} items", field="items"
        )

    if context is None:
        context = OperationContext(
            timeout_seconds=request.timeout_seconds or BULK_OPERATION_TIMEOUT_SECONDS
        )

    header = request.header()
    defaults = {k: v for k, v in header.items() if v is not None}
    locked = {k: header[k] for k in BULK_LOCKED_FIELDS}

    created: List[AttendanceRead] = []
    errors: List[BulkItemError] = []
    touched: Set[SummaryKey] = set()
    processed = 0

    for chunk_start in range(0, len(request.items), BULK_CHUNK_SIZE):
        if context.cancelled:
            break

        chunk = request.items[chunk_start : chunk_start + BULK_CHUNK_SIZE]
        for offset, item in enumerate(chunk):
            if context.cancelled:
                break

            index = chunk_start + offset
            processed += 1

            try:
                if not isinstance(item, dict):
                    raise ValidationError("Each item must be an object")
                data = AttendanceCreate.model_validate({**defaults, **item, **locked})
                record = await _insert_record(session, data, actor)
            except (PydanticValidationError, BaseAppException) as e:
                errors.append(_bulk_error(index, item, e))
                continue

            created.append(AttendanceRead.model_validate(record))
            touched.update(keys_for_record(record))

        # Keep the identity map bounded on large imports
        session.expunge_all()

    cancelled = processed < len(request.items)
    status = _bulk_status(len(created), len(errors), len(request.items))

    log_business_event(
        "attendance_bulk_marked",
        "attendance",
        None,
        {
            "class_id": request.class_id,
            "attendance_date": request.attendance_date.isoformat(),
            "total_items": len(request.items),
            "created_count": len(created),
            "error_count": len(errors),
            "cancelled": cancelled,
            "marked_by": actor.id,
        },
    )
    if cancelled:
        logger.warning(
            f"Bulk attendance stopped early: {context.reason}",
            extra={"processed": processed, "total_items": len(request.items)},
        )

    await _refresh_summaries(session, touched, actor)

    return BulkAttendanceResult(
        status=status,
        total_items=len(request.items),
        processed_count=processed,
        created_count=len(created),
        error_count=len(errors),
        created=created,
        errors=errors,
        cancelled=cancelled,
        cancel_reason=context.reason if cancelled else None,
    )


@db_operation
async def update_attendance(
    session: AsyncSession, record_id: int, patch: AttendanceUpdate, actor: Actor
) -> AttendanceRecord:
    """
    Apply a patch written against a known version.

    A stale expected_version, or another writer committing first, is a
    ConflictError. An effective change appends one history entry; a patch
    that changes nothing leaves the record as it is.
    """
    record = await get_attendance_by_id(session, record_id)

    if record.version != patch.expected_version:
        raise StaleVersionError(
            "Attendance", record_id, patch.expected_version, record.version
        )

    changes = patch.changes()
    diff = _diff(record, changes)
    if not diff:
        return record

    merged = {field: getattr(record, field) for field in STATE_FIELDS}
    merged.update(changes)
    validate_attendance_state(merged)

    keys_before = keys_for_record(record)

    for field in diff:
        setattr(record, field, changes[field])
    record.slot_key = _slot_key_of(record)
    record.is_modified = True
    record.last_modified_by = actor.id
    _log_modification(session, record, ModificationAction.UPDATE, actor, diff)

    await _commit_record_write(session, record, patch.expected_version)

    log_business_event(
        "attendance_updated",
        "attendance",
        record.id,
        {"changed_fields": sorted(diff), "modified_by": actor.id, "version": record.version},
    )

    await _refresh_summaries(session, keys_before | keys_for_record(record), actor)
    return record


@db_operation
async def verify_attendance(
    session: AsyncSession,
    record_id: int,
    actor: Actor,
    gate: AuthorizationGate,
    override: bool = False,
) -> AttendanceRecord:
    """
    Stamp a record as verified.

    Verifying again as the same actor changes nothing. A record verified by
    someone else is a conflict unless the caller asks to override and holds
    the override capability; an override is kept in the history.
    """
    record = await get_attendance_by_id(session, record_id)
    await require_capability(gate, actor, Capability.VERIFY, _scope(record))

    expected_version = record.version

    if record.is_verified:
        if record.verified_by == actor.id:
            return record

        if not override:
            raise ConflictError(
                "Attendance is already verified by another actor",
                reason="already_verified",
                details={"record_id": record.id, "verified_by": record.verified_by},
            )

        await require_capability(gate, actor, Capability.VERIFY_OVERRIDE, _scope(record))

    now = utcnow()
    if record.is_verified:
        _log_modification(
            session,
            record,
            ModificationAction.VERIFY_OVERRIDE,
            actor,
            {
                "verified_by": {"from": record.verified_by, "to": actor.id},
                "verified_at": {
                    "from": _jsonable(record.verified_at),
                    "to": now.isoformat(),
                },
            },
        )

    record.is_verified = True
    record.verified_by = actor.id
    record.verified_at = now

    await _commit_record_write(session, record, expected_version)

    log_business_event(
        "attendance_verified",
        "attendance",
        record.id,
        {"verified_by": actor.id, "override": override},
    )
    return record


@db_operation
async def excuse_attendance(
    session: AsyncSession,
    record_id: int,
    actor: Actor,
    gate: AuthorizationGate,
    reason: Optional[str] = None,
) -> AttendanceRecord:
    """Mark a record excused; its status is left alone"""
    record = await get_attendance_by_id(session, record_id)
    await require_capability(gate, actor, Capability.EXCUSE, _scope(record))

    expected_version = record.version
    changes = {
        "is_excused": True,
        "excused_by": actor.id,
        "excuse_reason": reason if reason is not None else record.excuse_reason,
    }
    diff = _diff(record, changes)
    if not diff:
        return record

    for field, value in changes.items():
        setattr(record, field, value)
    record.last_modified_by = actor.id
    _log_modification(session, record, ModificationAction.EXCUSE, actor, diff)

    await _commit_record_write(session, record, expected_version)

    log_business_event(
        "attendance_excused",
        "attendance",
        record.id,
        {"excused_by": actor.id, "reason": record.excuse_reason},
    )

    await _refresh_summaries(session, keys_for_record(record), actor)
    return record


@db_operation
async def soft_delete_attendance(
    session: AsyncSession,
    record_id: int,
    actor: Actor,
    gate: AuthorizationGate,
) -> AttendanceRecord:
    """Retire a record; it stays for audit but frees its slot"""
    record = await get_attendance_by_id(session, record_id)
    await require_capability(gate, actor, Capability.DELETE, _scope(record))

    expected_version = record.version
    now = utcnow()

    _log_modification(
        session,
        record,
        ModificationAction.DELETE,
        actor,
        {"deleted_at": {"from": None, "to": now.isoformat()}},
    )
    record.deleted_at = now
    record.deleted_by = actor.id
    record.last_modified_by = actor.id

    await _commit_record_write(session, record, expected_version)

    log_business_event(
        "attendance_deleted",
        "attendance",
        record.id,
        {"deleted_by": actor.id, "slot_key": record.slot_key},
    )

    await _refresh_summaries(session, keys_for_record(record), actor)
    return record


@db_operation
async def get_modification_history(
    session: AsyncSession, record_id: int
) -> List[AttendanceModification]:
    """Audit entries for a record in the order they were written"""
    await get_attendance_by_id(session, record_id, include_deleted=True)

    result = await session.execute(
        select(AttendanceModification)
        .where(AttendanceModification.attendance_id == record_id)
        .order_by(AttendanceModification.id)
    )
    return result.scalars().all()
