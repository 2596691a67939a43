import math
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from school_attendance.attendance.crud.queries import (
    get_attendance_records,
    get_attendance_statistics,
)
from school_attendance.attendance.crud.records import (
    bulk_create_attendance,
    create_attendance,
    excuse_attendance,
    get_attendance_by_id,
    get_modification_history,
    soft_delete_attendance,
    update_attendance,
    verify_attendance,
)
from school_attendance.attendance.models import AttendanceRecord
from school_attendance.attendance.schemas import (
    AttendanceCreate,
    AttendanceDetail,
    AttendanceFilters,
    AttendanceListResponse,
    AttendanceRead,
    AttendanceStatistics,
    AttendanceStatus,
    AttendanceUpdate,
    BulkAttendanceCreate,
    BulkAttendanceResult,
    BulkStatus,
    ExcuseRequest,
    ModificationRead,
    SortOrder,
    VerifyRequest,
)
from school_attendance.core.authorization import AuthorizationGate
from school_attendance.core.database import get_session
from school_attendance.core.dependencies import (
    get_authorization_gate,
    get_current_actor,
    resolve_school_scope,
)
from school_attendance.core.exceptions import NotFoundError
from school_attendance.core.limits import limiter
from school_attendance.core.security import Actor

router = APIRouter(prefix="/attendance", tags=["Attendance"])

BULK_STATUS_CODES = {
    BulkStatus.SUCCESS: status.HTTP_201_CREATED,
    BulkStatus.PARTIAL: status.HTTP_207_MULTI_STATUS,
    BulkStatus.FAILED: status.HTTP_400_BAD_REQUEST,
}


def ensure_visible(actor: Actor, record: AttendanceRecord) -> None:
    """Records of another school look like they do not exist"""
    if actor.school_id is not None and record.school_id != actor.school_id:
        raise NotFoundError("Attendance", str(record.id))


async def load_visible_record(
    db: AsyncSession, actor: Actor, record_id: int, **kwargs
) -> AttendanceRecord:
    record = await get_attendance_by_id(db, record_id, **kwargs)
    ensure_visible(actor, record)
    return record


@router.post("", response_model=AttendanceRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
async def mark_attendance(
    request: Request,
    data: AttendanceCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """
    Mark attendance for one student and period.

    - **status**: present, absent, late, half_day, sick or excused
    - **late_minutes**: derived from check-in and period start when omitted for late marks
    - Returns 409 when the slot already holds a live record
    """
    resolve_school_scope(actor, data.school_id)
    return await create_attendance(db, data, actor)


@router.post("/bulk", response_model=BulkAttendanceResult)
@limiter.limit("10/minute")
async def mark_attendance_bulk(
    request: Request,
    response: Response,
    data: BulkAttendanceCreate,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    db: AsyncSession = Depends(get_session),
):
    """
    Mark a whole class session at once.

    Header fields apply to every item. Each item succeeds or fails on its
    own: 201 when all were created, 207 when some failed, 400 when none
    were created.
    """
    resolve_school_scope(actor, data.school_id)
    result = await bulk_create_attendance(db, data, actor, gate)
    response.status_code = BULK_STATUS_CODES[result.status]
    return result


@router.get("", response_model=AttendanceListResponse)
@limiter.limit("60/minute")
async def list_attendance(
    request: Request,
    on_date: Optional[date] = Query(None, alias="date", description="Exact date"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    class_id: Optional[int] = Query(None),
    student_id: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    teacher_id: Optional[int] = Query(None),
    status_filter: Optional[AttendanceStatus] = Query(None, alias="status"),
    academic_year_id: Optional[int] = Query(None),
    school_id: Optional[int] = Query(None),
    verified: Optional[bool] = Query(None),
    include_deleted: bool = Query(False),
    sort_by: str = Query("attendance_date"),
    sort_order: SortOrder = Query(SortOrder.DESC),
    page: int = Query(1, ge=1, description="Page number starting from 1"),
    page_size: int = Query(15, ge=1, le=100, description="Records per page"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """Paginated attendance records with filters"""
    filters = AttendanceFilters(
        attendance_date=on_date,
        start_date=start_date,
        end_date=end_date,
        class_id=class_id,
        student_id=student_id,
        subject_id=subject_id,
        teacher_id=teacher_id,
        status=status_filter,
        academic_year_id=academic_year_id,
        school_id=resolve_school_scope(actor, school_id),
        verified=verified,
        include_deleted=include_deleted,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    records, total = await get_attendance_records(db, filters)

    return AttendanceListResponse(
        records=[AttendanceRead.model_validate(r) for r in records],
        total=total,
        page=page,
        size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@router.get("/statistics/overview", response_model=AttendanceStatistics)
@limiter.limit("30/minute")
async def attendance_statistics(
    request: Request,
    on_date: Optional[date] = Query(None, alias="date"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    class_id: Optional[int] = Query(None),
    student_id: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    teacher_id: Optional[int] = Query(None),
    academic_year_id: Optional[int] = Query(None),
    school_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """Present/absent/late counts and percentages for the filtered records"""
    filters = AttendanceFilters(
        attendance_date=on_date,
        start_date=start_date,
        end_date=end_date,
        class_id=class_id,
        student_id=student_id,
        subject_id=subject_id,
        teacher_id=teacher_id,
        academic_year_id=academic_year_id,
        school_id=resolve_school_scope(actor, school_id),
    )
    return await get_attendance_statistics(db, filters)


@router.get("/{record_id}", response_model=AttendanceDetail)
@limiter.limit("60/minute")
async def get_attendance(
    request: Request,
    record_id: int = Path(..., gt=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """One record with its modification history"""
    return await load_visible_record(db, actor, record_id, with_history=True)


@router.get("/{record_id}/history", response_model=List[ModificationRead])
@limiter.limit("30/minute")
async def get_attendance_history(
    request: Request,
    record_id: int = Path(..., gt=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    await load_visible_record(db, actor, record_id, include_deleted=True)
    return await get_modification_history(db, record_id)


@router.put("/{record_id}", response_model=AttendanceRead)
@limiter.limit("30/minute")
async def edit_attendance(
    request: Request,
    patch: AttendanceUpdate,
    record_id: int = Path(..., gt=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """
    Update a record written against a known version.

    Send the **expected_version** you last read; a newer stored version
    returns 409 and nothing is written.
    """
    await load_visible_record(db, actor, record_id)
    return await update_attendance(db, record_id, patch, actor)


@router.post("/{record_id}/verify", response_model=AttendanceRead)
@limiter.limit("30/minute")
async def verify_record(
    request: Request,
    record_id: int = Path(..., gt=0),
    body: Optional[VerifyRequest] = None,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    db: AsyncSession = Depends(get_session),
):
    await load_visible_record(db, actor, record_id)
    override = body.override if body else False
    return await verify_attendance(db, record_id, actor, gate, override=override)


@router.post("/{record_id}/excuse", response_model=AttendanceRead)
@limiter.limit("30/minute")
async def excuse_record(
    request: Request,
    record_id: int = Path(..., gt=0),
    body: Optional[ExcuseRequest] = None,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    db: AsyncSession = Depends(get_session),
):
    await load_visible_record(db, actor, record_id)
    reason = body.reason if body else None
    return await excuse_attendance(db, record_id, actor, gate, reason=reason)


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
async def delete_record(
    request: Request,
    record_id: int = Path(..., gt=0),
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    db: AsyncSession = Depends(get_session),
):
    await load_visible_record(db, actor, record_id)
    await soft_delete_attendance(db, record_id, actor, gate)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
