import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from school_attendance.core.database import db_retry
from school_attendance.attendance.models import is_slot_collision
from school_attendance.core.error_handlers import field_errors
from school_attendance.core.exceptions import DatabaseConnectionError


def connection_lost():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


async def test_retry_until_database_answers():
    calls = []

    @db_retry(max_attempts=3, delay=0)
    async def ping():
        calls.append(1)
        if len(calls) < 3:
            raise connection_lost()
        return "ok"

    assert await ping() == "ok"
    assert len(calls) == 3


async def test_retry_gives_up_with_connection_error():
    @db_retry(max_attempts=2, delay=0)
    async def ping():
        raise connection_lost()

    with pytest.raises(DatabaseConnectionError):
        await ping()


async def test_non_transient_errors_are_not_retried():
    calls = []

    @db_retry(max_attempts=3, delay=0)
    async def broken():
        calls.append(1)
        raise ValueError("bad query")

    with pytest.raises(ValueError):
        await broken()
    assert len(calls) == 1


def test_field_errors_use_ledger_field_paths():
    errors = [
        {"loc": ("body", "items", 3, "student_id"), "msg": "Input should be a valid integer", "type": "int_parsing", "input": "abc"},
        {"loc": ("query", "page"), "msg": "Input should be greater than 0", "type": "greater_than"},
    ]

    assert field_errors(errors) == [
        {"field": "items.3.student_id", "message": "Input should be a valid integer", "type": "int_parsing"},
        {"field": "page", "message": "Input should be greater than 0", "type": "greater_than"},
    ]


def test_slot_collision_detection():
    slot = IntegrityError(
        "INSERT", {}, Exception("UNIQUE constraint failed: attendance_records.slot_key")
    )
    other = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: x.y"))

    assert is_slot_collision(slot) is True
    assert is_slot_collision(other) is False
