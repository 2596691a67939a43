import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")

from datetime import date, time

import pytest

from school_attendance.attendance import models as attendance_models  # noqa: F401
from school_attendance.attendance.schemas import AttendanceCreate
from school_attendance.core.authorization import StaticAuthorizationGate
from school_attendance.core.cache import InMemorySummaryCache
from school_attendance.core.database import Base, build_engine, build_session_factory
from school_attendance.core.security import Actor
from school_attendance.summaries import models as summary_models  # noqa: F401

SCHOOL_ID = 1
CLASS_ID = 7
ACADEMIC_YEAR_ID = 2025
TEACHER_ID = 50

GRANTS = {
    "admin": ["*"],
    "teacher": ["attendance.bulk_create", "attendance.excuse"],
    "verifier": ["attendance.verify"],
}


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'attendance.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gate():
    return StaticAuthorizationGate(GRANTS)


@pytest.fixture
def cache():
    return InMemorySummaryCache(ttl_seconds=60, max_entries=100)


@pytest.fixture
def admin():
    return Actor(id=100, school_id=SCHOOL_ID, roles=("admin",))


@pytest.fixture
def other_admin():
    return Actor(id=101, school_id=SCHOOL_ID, roles=("admin",))


@pytest.fixture
def teacher():
    return Actor(id=TEACHER_ID, school_id=SCHOOL_ID, roles=("teacher",))


@pytest.fixture
def verifier():
    return Actor(id=102, school_id=SCHOOL_ID, roles=("verifier",))


def make_attendance(**overrides) -> AttendanceCreate:
    data = {
        "school_id": SCHOOL_ID,
        "class_id": CLASS_ID,
        "student_id": 1,
        "subject_id": 3,
        "teacher_id": TEACHER_ID,
        "academic_year_id": ACADEMIC_YEAR_ID,
        "attendance_date": date(2025, 9, 1),
        "period_number": 1,
        "period_start_time": time(8, 0),
        "period_end_time": time(8, 45),
        "status": "present",
        "check_in_time": time(7, 55),
    }
    data.update(overrides)
    return AttendanceCreate(**data)
