from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from school_attendance.core.authorization import (
    AuthorizationGate,
    AuthorizationScope,
    Capability,
    require_capability,
)
from school_attendance.core.cache import SummaryCache
from school_attendance.core.config import (
    BULK_OPERATION_TIMEOUT_SECONDS,
    MIN_ATTENDANCE_PERCENTAGE,
)
from school_attendance.core.context import OperationContext
from school_attendance.core.database import get_session
from school_attendance.core.dependencies import (
    get_authorization_gate,
    get_current_actor,
    get_summary_cache,
    resolve_school_scope,
)
from school_attendance.core.exceptions import NotFoundError
from school_attendance.core.limits import limiter
from school_attendance.core.security import Actor
from school_attendance.summaries.crud.queries import (
    generate_report,
    get_below_minimum,
    get_student_summaries,
    get_summary,
)
from school_attendance.summaries.crud.summaries import (
    calculate_summary,
    fetch_period_records,
    recalculate_period,
)
from school_attendance.summaries.models import SummaryKey
from school_attendance.summaries.schemas import (
    AlertDispatchResult,
    AttendanceReport,
    CalculateSummaryRequest,
    RecalculateRequest,
    RecalculationResult,
    SummaryFilters,
    SummaryListResponse,
    SummaryRead,
)
from school_attendance.summaries.services.notifications import (
    AlertNotifier,
    get_alert_notifier,
)
from school_attendance.summaries.services.threshold_monitor import (
    run_alert_cycle,
    scan_below_minimum,
)

router = APIRouter(prefix="/summaries", tags=["Attendance Summaries"])


def summary_filters(
    school_id: Optional[int] = Query(None),
    class_id: Optional[int] = Query(None),
    student_id: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    academic_year_id: Optional[int] = Query(None),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    below_minimum: Optional[bool] = Query(None),
    alert_sent: Optional[bool] = Query(None),
    actor: Actor = Depends(get_current_actor),
) -> SummaryFilters:
    return SummaryFilters(
        school_id=resolve_school_scope(actor, school_id),
        class_id=class_id,
        student_id=student_id,
        subject_id=subject_id,
        academic_year_id=academic_year_id,
        month=month,
        year=year,
        below_minimum=below_minimum,
        alert_sent=alert_sent,
    )


@router.get("/students/{student_id}", response_model=SummaryListResponse)
@limiter.limit("60/minute")
async def student_summaries(
    request: Request,
    student_id: int = Path(..., gt=0),
    school_id: Optional[int] = Query(None),
    class_id: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    academic_year_id: Optional[int] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    below_minimum: Optional[bool] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """A student's monthly summaries, newest first"""
    filters = SummaryFilters(
        school_id=resolve_school_scope(actor, school_id),
        class_id=class_id,
        subject_id=subject_id,
        academic_year_id=academic_year_id,
        year=year,
        below_minimum=below_minimum,
    )
    summaries = await get_student_summaries(db, student_id, filters)
    return SummaryListResponse(
        summaries=[SummaryRead.model_validate(s) for s in summaries],
        total=len(summaries),
    )


@router.get("/key", response_model=SummaryRead)
@limiter.limit("60/minute")
async def summary_by_key(
    request: Request,
    student_id: int = Query(..., gt=0),
    class_id: int = Query(..., gt=0),
    academic_year_id: int = Query(..., gt=0),
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    subject_id: Optional[int] = Query(None, gt=0),
    actor: Actor = Depends(get_current_actor),
    cache: SummaryCache = Depends(get_summary_cache),
    db: AsyncSession = Depends(get_session),
):
    """One summary by its natural key"""
    key = SummaryKey(
        student_id=student_id,
        class_id=class_id,
        subject_id=subject_id,
        academic_year_id=academic_year_id,
        month=month,
        year=year,
    )
    summary = await get_summary(db, key, cache)
    if summary is None or (
        actor.school_id is not None and summary.school_id not in (None, actor.school_id)
    ):
        raise NotFoundError("Attendance summary", key.value)
    return summary


@router.post("/calculate", response_model=SummaryRead)
@limiter.limit("30/minute")
async def calculate(
    request: Request,
    data: CalculateSummaryRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    cache: SummaryCache = Depends(get_summary_cache),
    db: AsyncSession = Depends(get_session),
):
    """
    Recompute one summary from the ledger.

    Safe to repeat: an unchanged ledger leaves the stored summary as is.
    """
    key = SummaryKey(
        student_id=data.student_id,
        class_id=data.class_id,
        subject_id=data.subject_id,
        academic_year_id=data.academic_year_id,
        month=data.month,
        year=data.year,
    )
    records = await fetch_period_records(db, key)
    school_id = records[0].school_id if records else actor.school_id
    await require_capability(
        gate,
        actor,
        Capability.RECALCULATE,
        AuthorizationScope(school_id=school_id, class_id=data.class_id),
    )

    return await calculate_summary(
        db,
        data.student_id,
        data.class_id,
        data.subject_id,
        data.academic_year_id,
        data.month,
        data.year,
        actor,
        minimum_required_percentage=data.minimum_required_percentage,
        cache=cache,
    )


@router.post("/recalculate", response_model=RecalculationResult)
@limiter.limit("5/minute")
async def recalculate(
    request: Request,
    data: RecalculateRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    cache: SummaryCache = Depends(get_summary_cache),
    db: AsyncSession = Depends(get_session),
):
    """Recompute every summary with records in a month"""
    context = OperationContext(
        timeout_seconds=data.timeout_seconds or BULK_OPERATION_TIMEOUT_SECONDS
    )
    return await recalculate_period(
        db,
        data.month,
        data.year,
        actor,
        gate,
        school_id=resolve_school_scope(actor, data.school_id),
        class_id=data.class_id,
        context=context,
        cache=cache,
    )


@router.get("/below-minimum", response_model=List[SummaryRead])
@limiter.limit("30/minute")
async def below_minimum(
    request: Request,
    minimum_percentage: float = Query(MIN_ATTENDANCE_PERCENTAGE, ge=0, le=100),
    academic_year_id: Optional[int] = Query(None),
    school_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_session),
):
    """Students under the threshold whose alert has not gone out yet"""
    return await get_below_minimum(
        db,
        minimum_percentage=minimum_percentage,
        academic_year_id=academic_year_id,
        school_id=resolve_school_scope(actor, school_id),
    )


@router.get("/flagged", response_model=List[SummaryRead])
@limiter.limit("30/minute")
async def flagged_summaries(
    request: Request,
    filters: SummaryFilters = Depends(summary_filters),
    db: AsyncSession = Depends(get_session),
):
    """Summaries flagged below minimum when they were calculated"""
    return await scan_below_minimum(db, filters)


@router.post("/alerts/dispatch", response_model=AlertDispatchResult)
@limiter.limit("5/minute")
async def dispatch(
    request: Request,
    filters: SummaryFilters = Depends(summary_filters),
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    notifier: AlertNotifier = Depends(get_alert_notifier),
    cache: SummaryCache = Depends(get_summary_cache),
    db: AsyncSession = Depends(get_session),
):
    """Send low-attendance alerts that have not been sent yet"""
    return await run_alert_cycle(db, filters, notifier, actor, gate, cache)


@router.get("/report", response_model=AttendanceReport)
@limiter.limit("10/minute")
async def report(
    request: Request,
    filters: SummaryFilters = Depends(summary_filters),
    db: AsyncSession = Depends(get_session),
):
    """Summaries lowest attendance first, with totals"""
    return await generate_report(db, filters)
