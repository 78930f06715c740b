"""
Schedule, job site and conflict endpoints
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.errors import MalformedInputError, NotFoundError
from app.schemas.schedule import (
    ConflictCheckRequest,
    ConflictCheckResponse,
    JobSite,
    JobSiteCreate,
    Schedule,
    ScheduleChange,
    ScheduleChangeRequest,
    ScheduleCreate,
    ScheduleMoveCheck,
)
from app.services.conflict_service import detect_conflicts
from app.services.schedule_service import (
    apply_schedule_change,
    create_job_site,
    create_schedule,
    get_job_site,
    get_schedule,
)
from app.services.session_service import annotate_conflicts, reconcile_schedule_conflicts, schedule_move_allowed
from app.utils.datetime_utils import ensure_utc, now_utc

_log = logging.getLogger(__name__)

router = APIRouter()
job_sites_router = APIRouter()
employees_router = APIRouter()

DEFAULT_CONFLICT_WINDOW_DAYS = 7


@router.post("", response_model=Schedule, status_code=status.HTTP_201_CREATED)
async def create_schedule_endpoint(data: ScheduleCreate, db: Session = Depends(get_db)):
    """Create a schedule; conflicts it introduces are recorded on the employee's live sessions"""
    schedule = create_schedule(db, data, actor_id=data.created_by)
    reconcile_schedule_conflicts(db, schedule.schedule_id)
    return schedule


@router.post("/conflicts", response_model=ConflictCheckResponse)
async def check_conflicts_endpoint(request: ConflictCheckRequest):
    """Detect conflicts over a posted schedule set (nothing is stored)"""
    conflicts = detect_conflicts(request.schedules, request.policy)
    return ConflictCheckResponse(conflicts=conflicts, total=len(conflicts))


@router.get("/{schedule_id}", response_model=Schedule)
async def get_schedule_endpoint(schedule_id: str, db: Session = Depends(get_db)):
    schedule = get_schedule(db, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found", code="schedule_not_found")
    return schedule


@router.get("/{schedule_id}/move-check", response_model=ScheduleMoveCheck)
async def move_check_endpoint(
    schedule_id: str,
    start: datetime = Query(..., description="Proposed start"),
    end: datetime = Query(..., description="Proposed end"),
    db: Session = Depends(get_db),
):
    """Whether the schedule could move to [start, end) without overlapping another schedule"""
    allowed = schedule_move_allowed(db, schedule_id, start, end)
    return ScheduleMoveCheck(schedule_id=schedule_id, start_time=ensure_utc(start), end_time=ensure_utc(end),
                             allowed=allowed)


@router.post("/{schedule_id}/changes", response_model=ScheduleChange, status_code=status.HTTP_201_CREATED)
async def change_schedule_endpoint(
    schedule_id: str,
    change: ScheduleChangeRequest,
    db: Session = Depends(get_db),
):
    """Change one field of a schedule; the change is recorded with actor and reason"""
    record = apply_schedule_change(db, schedule_id, change)
    introduced = reconcile_schedule_conflicts(db, schedule_id)
    if introduced:
        _log.info("Change of %s on schedule %s introduced %s conflict(s)", change.field, schedule_id, len(introduced))
    return record


@job_sites_router.post("", response_model=JobSite, status_code=status.HTTP_201_CREATED)
async def create_job_site_endpoint(data: JobSiteCreate, db: Session = Depends(get_db)):
    return create_job_site(db, data)


@job_sites_router.get("/{job_site_id}", response_model=JobSite)
async def get_job_site_endpoint(job_site_id: str, db: Session = Depends(get_db)):
    job_site = get_job_site(db, job_site_id)
    if job_site is None:
        raise NotFoundError(f"Job site {job_site_id} not found", code="job_site_not_found")
    return job_site


@employees_router.get("/{employee_id}/conflicts", response_model=ConflictCheckResponse)
async def employee_conflicts_endpoint(
    employee_id: str,
    start: Optional[datetime] = Query(None, description="Window start (default: now)"),
    end: Optional[datetime] = Query(None, description="Window end (default: start + 7 days)"),
    db: Session = Depends(get_db),
):
    """
    Detect conflicts over the employee's stored schedules in the window and
    annotate the affected live sessions with schedule_conflict errors
    """
    window_start = ensure_utc(start) if start else now_utc()
    window_end = ensure_utc(end) if end else window_start + timedelta(days=DEFAULT_CONFLICT_WINDOW_DAYS)
    if window_end <= window_start:
        raise MalformedInputError("end must be after start")
    conflicts = annotate_conflicts(db, employee_id, window_start, window_end)
    return ConflictCheckResponse(conflicts=conflicts, total=len(conflicts))
