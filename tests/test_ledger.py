import asyncio
from datetime import date

import pytest
from sqlalchemy import func, select

from school_attendance.attendance.crud.records import (
    create_attendance,
    excuse_attendance,
    get_attendance_by_id,
    get_modification_history,
    soft_delete_attendance,
    update_attendance,
    verify_attendance,
)
from school_attendance.attendance.models import AttendanceRecord
from school_attendance.attendance.schemas import AttendanceUpdate
from school_attendance.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

from conftest import make_attendance


async def test_create_stamps_marker_and_slot(session, teacher):
    record = await create_attendance(session, make_attendance(), teacher)

    assert record.id is not None
    assert record.version == 1
    assert record.marked_by == teacher.id
    assert record.marked_at is not None
    assert record.slot_key == "1:7:1:3:2025-09-01:1"
    assert record.is_verified is False


async def test_duplicate_slot_is_a_conflict(session, teacher):
    await create_attendance(session, make_attendance(), teacher)

    with pytest.raises(ConflictError) as exc:
        await create_attendance(session, make_attendance(status="late"), teacher)

    assert exc.value.details["reason"] == "duplicate"


async def test_slot_without_subject_or_period_is_still_unique(session, teacher):
    data = make_attendance(subject_id=None, period_number=None)
    await create_attendance(session, data, teacher)

    with pytest.raises(ConflictError):
        await create_attendance(session, data, teacher)


async def test_different_period_is_a_different_slot(session, teacher):
    await create_attendance(session, make_attendance(period_number=1), teacher)
    second = await create_attendance(session, make_attendance(period_number=2), teacher)

    assert second.id is not None


async def test_concurrent_creates_have_one_winner(session_factory, teacher):
    async def mark():
        async with session_factory() as session:
            return await create_attendance(session, make_attendance(), teacher)

    results = await asyncio.gather(mark(), mark(), return_exceptions=True)

    created = [r for r in results if isinstance(r, AttendanceRecord)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1

    async with session_factory() as session:
        count = await session.scalar(select(func.count(AttendanceRecord.id)))
    assert count == 1


async def test_update_with_current_version_appends_history(session, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)

    updated = await update_attendance(
        session,
        record.id,
        AttendanceUpdate(expected_version=1, status="late", late_minutes=7),
        admin,
    )

    assert updated.version == 2
    assert updated.is_modified is True
    assert updated.last_modified_by == admin.id

    history = await get_modification_history(session, record.id)
    assert len(history) == 1
    assert history[0].action == "update"
    assert history[0].modified_by == admin.id
    assert history[0].changes["status"] == {"from": "present", "to": "late"}
    assert history[0].changes["late_minutes"] == {"from": 0, "to": 7}


async def test_update_with_stale_version_is_rejected(session, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)
    await update_attendance(
        session, record.id, AttendanceUpdate(expected_version=1, remarks="first"), admin
    )

    with pytest.raises(ConflictError) as exc:
        await update_attendance(
            session,
            record.id,
            AttendanceUpdate(expected_version=1, remarks="second"),
            admin,
        )

    assert exc.value.details["reason"] == "stale_version"
    assert exc.value.details["current_version"] == 2

    stored = await get_attendance_by_id(session, record.id)
    assert stored.remarks == "first"


async def test_concurrent_updates_from_same_version_have_one_winner(
    session_factory, teacher, admin
):
    async with session_factory() as session:
        record = await create_attendance(session, make_attendance(), teacher)

    async def edit(remarks):
        async with session_factory() as session:
            return await update_attendance(
                session,
                record.id,
                AttendanceUpdate(expected_version=1, remarks=remarks),
                admin,
            )

    results = await asyncio.gather(edit("a"), edit("b"), return_exceptions=True)

    assert len([r for r in results if isinstance(r, AttendanceRecord)]) == 1
    assert len([r for r in results if isinstance(r, ConflictError)]) == 1


async def test_update_that_changes_nothing_is_a_no_op(session, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)

    same = await update_attendance(
        session, record.id, AttendanceUpdate(expected_version=1, status="present"), admin
    )

    assert same.version == 1
    assert same.is_modified is False
    assert await get_modification_history(session, record.id) == []


async def test_update_cannot_break_record_invariants(session, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)

    with pytest.raises(ValidationError):
        await update_attendance(
            session, record.id, AttendanceUpdate(expected_version=1, status="absent"), admin
        )


@pytest.mark.parametrize(
    "field", ["attendance_date", "status", "late_minutes", "entry_method"]
)
def test_update_cannot_clear_required_field(field):
    with pytest.raises(ValidationError) as exc:
        AttendanceUpdate(expected_version=1, **{field: None})

    assert exc.value.details["field"] == field


async def test_not_null_violation_is_not_reported_as_duplicate(session, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)
    patch = AttendanceUpdate.model_construct(expected_version=1, entry_method=None)

    with pytest.raises(ConflictError) as exc:
        await update_attendance(session, record.id, patch, admin)

    assert exc.value.details["reason"] == "integrity"
    stored = await get_attendance_by_id(session, record.id)
    assert stored.entry_method == "manual"
    assert stored.version == 1


async def test_update_onto_an_occupied_slot_is_a_conflict(session, teacher, admin):
    await create_attendance(session, make_attendance(period_number=1), teacher)
    second = await create_attendance(session, make_attendance(period_number=2), teacher)

    with pytest.raises(ConflictError):
        await update_attendance(
            session, second.id, AttendanceUpdate(expected_version=1, period_number=1), admin
        )


async def test_verify_twice_keeps_first_stamp(session, gate, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)

    await verify_attendance(session, record.id, admin, gate)
    first = await get_attendance_by_id(session, record.id)
    verified_at = first.verified_at
    version = first.version

    second = await verify_attendance(session, record.id, admin, gate)

    assert second.is_verified is True
    assert second.verified_by == admin.id
    assert second.verified_at == verified_at
    assert second.version == version


async def test_verify_by_another_actor_needs_override(
    session, gate, teacher, admin, other_admin
):
    record = await create_attendance(session, make_attendance(), teacher)
    await verify_attendance(session, record.id, admin, gate)

    with pytest.raises(ConflictError) as exc:
        await verify_attendance(session, record.id, other_admin, gate)
    assert exc.value.details["reason"] == "already_verified"

    overridden = await verify_attendance(
        session, record.id, other_admin, gate, override=True
    )
    assert overridden.verified_by == other_admin.id

    history = await get_modification_history(session, record.id)
    assert [h.action for h in history] == ["verify_override"]
    assert history[0].changes["verified_by"] == {"from": admin.id, "to": other_admin.id}


async def test_override_requires_capability(session, gate, teacher, admin, verifier):
    record = await create_attendance(session, make_attendance(), teacher)
    await verify_attendance(session, record.id, admin, gate)

    with pytest.raises(AuthorizationError):
        await verify_attendance(session, record.id, verifier, gate, override=True)


async def test_verify_requires_capability(session, gate, teacher):
    record = await create_attendance(session, make_attendance(), teacher)

    with pytest.raises(AuthorizationError):
        await verify_attendance(session, record.id, teacher, gate)


async def test_excuse_keeps_status_and_logs_history(session, gate, teacher):
    record = await create_attendance(
        session, make_attendance(status="absent", check_in_time=None), teacher
    )

    excused = await excuse_attendance(session, record.id, teacher, gate, reason="Flu")

    assert excused.is_excused is True
    assert excused.excused_by == teacher.id
    assert excused.excuse_reason == "Flu"
    assert excused.status == "absent"
    assert excused.is_modified is False

    history = await get_modification_history(session, record.id)
    assert [h.action for h in history] == ["excuse"]


async def test_excuse_denied_without_capability(session, gate, teacher, verifier):
    record = await create_attendance(session, make_attendance(), teacher)

    with pytest.raises(AuthorizationError):
        await excuse_attendance(session, record.id, verifier, gate)


async def test_soft_delete_hides_record_and_frees_slot(session, gate, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)

    await soft_delete_attendance(session, record.id, admin, gate)

    with pytest.raises(NotFoundError):
        await get_attendance_by_id(session, record.id)

    kept = await get_attendance_by_id(session, record.id, include_deleted=True)
    assert kept.deleted_by == admin.id

    again = await create_attendance(session, make_attendance(status="late"), teacher)
    assert again.id != record.id

    history = await get_modification_history(session, record.id)
    assert [h.action for h in history] == ["delete"]


async def test_deleted_record_cannot_be_updated(session, gate, teacher, admin):
    record = await create_attendance(session, make_attendance(), teacher)
    await soft_delete_attendance(session, record.id, admin, gate)

    with pytest.raises(NotFoundError):
        await update_attendance(
            session, record.id, AttendanceUpdate(expected_version=2, remarks="x"), admin
        )


async def test_cross_school_actor_is_denied(session, gate, teacher):
    from school_attendance.core.security import Actor

    record = await create_attendance(session, make_attendance(), teacher)
    outsider = Actor(id=999, school_id=2, roles=("admin",))

    with pytest.raises(AuthorizationError):
        await verify_attendance(session, record.id, outsider, gate)


async def test_history_is_ordered(session, gate, teacher, admin):
    record = await create_attendance(
        session, make_attendance(status="absent", check_in_time=None), teacher
    )
    await update_attendance(
        session, record.id, AttendanceUpdate(expected_version=1, remarks="called home"), admin
    )
    await excuse_attendance(session, record.id, admin, gate, reason="Family emergency")
    await soft_delete_attendance(session, record.id, admin, gate)

    history = await get_modification_history(session, record.id)

    assert [h.action for h in history] == ["update", "excuse", "delete"]
    assert history[1].changes["excuse_reason"]["to"] == "Family emergency"


def test_slot_key_defaults_missing_parts():
    from school_attendance.attendance.models import build_slot_key

    assert build_slot_key(1, 2, 3, None, date(2025, 9, 1), None) == "1:2:3:0:2025-09-01:0"
