"""
Schedule service - job sites, schedules, in-progress changes and recurrence expansion
"""
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional
from uuid import uuid4

from dateutil.rrule import rrulestr
from sqlalchemy.orm import Session

from app.core.errors import MalformedInputError, NotFoundError, PreconditionError
from app.models.job_site import JobSiteModel
from app.models.schedule import ScheduleChangeModel, ScheduleModel
from app.schemas.schedule import (
    JobSite,
    JobSiteCreate,
    Schedule,
    ScheduleChange,
    ScheduleChangeRequest,
    ScheduleCreate,
    ScheduleStatus,
)
from app.services.audit_service import log_audit
from app.utils.datetime_utils import ensure_utc, now_utc, to_local
from app.utils.json_serializer import sanitize_for_json

_log = logging.getLogger(__name__)

# Fields a ScheduleChange may touch once the shift is in progress
CHANGEABLE_FIELDS = ("start_time", "end_time", "job_site_id", "break_allowance_minutes", "status")


def expand_occurrences(schedule: Schedule, window_start: datetime, window_end: datetime) -> List[Schedule]:
    """
    Occurrences of a schedule whose [start, end) intersects [window_start, window_end).

    A recurring schedule's RRULE is evaluated in the schedule's local zone so a
    09:00 shift stays at 09:00 wall-clock time across DST changes. Each
    occurrence is a copy of the schedule with its own start/end and
    ``occurrence_start`` set.

    Raises:
        MalformedInputError: If the recurrence rule cannot be parsed
    """
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    duration = schedule.end_time - schedule.start_time

    if not schedule.recurrence_rule:
        if schedule.start_time < window_end and window_start < schedule.end_time:
            return [schedule]
        return []

    dtstart = to_local(schedule.start_time, schedule.time_zone)
    try:
        rule = rrulestr(schedule.recurrence_rule, dtstart=dtstart)
    except (ValueError, TypeError) as exc:
        raise MalformedInputError(
            f"Invalid recurrence rule on schedule {schedule.schedule_id}",
            context={"recurrence_rule": schedule.recurrence_rule, "reason": str(exc)},
        )

    occurrences = []
    search_from = to_local(window_start - duration, schedule.time_zone)
    search_to = to_local(window_end, schedule.time_zone)
    for local_start in rule.between(search_from, search_to, inc=True):
        start = ensure_utc(local_start)
        end = start + duration
        if start < window_end and window_start < end:
            occurrences.append(schedule.model_copy(update={
                "start_time": start,
                "end_time": end,
                "occurrence_start": start,
            }))
    return occurrences


def _to_schema(row: ScheduleModel) -> Schedule:
    return Schedule(
        schedule_id=row.schedule_id,
        employee_id=row.employee_id,
        company_id=row.company_id,
        job_site_id=row.job_site_id,
        start_time=row.start_time,
        end_time=row.end_time,
        shift_type=row.shift_type,
        break_allowance_minutes=row.break_allowance_minutes,
        expected_hours=row.expected_hours,
        recurrence_rule=row.recurrence_rule,
        requires_approval=row.requires_approval,
        status=row.status,
        time_zone=row.time_zone,
        created_by=row.created_by,
    )


def create_job_site(db: Session, data: JobSiteCreate, actor_id: Optional[str] = None) -> JobSite:
    """
    Register a job site

    Raises:
        PreconditionError: If the job_site_id is already taken
    """
    job_site_id = data.job_site_id or uuid4().hex
    if db.query(JobSiteModel).filter(JobSiteModel.job_site_id == job_site_id).first():
        raise PreconditionError(f"Job site {job_site_id} already exists", code="job_site_exists")
    row = JobSiteModel(
        job_site_id=job_site_id,
        company_id=data.company_id,
        name=data.name,
        latitude=data.latitude,
        longitude=data.longitude,
        radius_meters=data.radius_meters,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    log_audit(db, actor_id or "system", "CREATE", "job_site", job_site_id, {"name": data.name})
    return JobSite.model_validate(row)


def get_job_site(db: Session, job_site_id: str) -> Optional[JobSite]:
    row = db.query(JobSiteModel).filter(JobSiteModel.job_site_id == job_site_id).first()
    return JobSite.model_validate(row) if row else None


def create_schedule(db: Session, data: ScheduleCreate, actor_id: Optional[str] = None) -> Schedule:
    """
    Create a schedule

    Raises:
        MalformedInputError: If the schedule ends at or before its start, or its RRULE is invalid
        PreconditionError: If the schedule_id is already taken
    """
    start = ensure_utc(data.start_time)
    end = ensure_utc(data.end_time)
    schedule_id = data.schedule_id or uuid4().hex
    if end <= start:
        raise MalformedInputError(
            "Schedule end_time must be after start_time",
            context={"start_time": start.isoformat(), "end_time": end.isoformat()},
        )
    if db.query(ScheduleModel).filter(ScheduleModel.schedule_id == schedule_id).first():
        raise PreconditionError(f"Schedule {schedule_id} already exists", code="schedule_exists")

    schedule = Schedule(
        schedule_id=schedule_id,
        employee_id=data.employee_id,
        company_id=data.company_id,
        job_site_id=data.job_site_id,
        start_time=start,
        end_time=end,
        shift_type=data.shift_type,
        break_allowance_minutes=data.break_allowance_minutes,
        expected_hours=data.expected_hours,
        recurrence_rule=data.recurrence_rule,
        requires_approval=data.requires_approval,
        time_zone=data.time_zone,
        created_by=data.created_by or actor_id,
    )
    if schedule.recurrence_rule:
        # parse once up front so a bad rule is rejected at creation
        expand_occurrences(schedule, start, start)

    row = ScheduleModel(**schedule.model_dump(exclude={"occurrence_start"}))
    db.add(row)
    db.commit()
    db.refresh(row)
    log_audit(db, actor_id or schedule.created_by or "system", "CREATE", "schedule", schedule_id,
              {"employee_id": schedule.employee_id, "start_time": start, "end_time": end})
    return _to_schema(row)


def get_schedule(db: Session, schedule_id: str) -> Optional[Schedule]:
    row = db.query(ScheduleModel).filter(ScheduleModel.schedule_id == schedule_id).first()
    return _to_schema(row) if row else None


def schedules_for_employee(
    db: Session,
    employee_id: str,
    window_start: datetime,
    window_end: datetime,
) -> List[Schedule]:
    """
    Schedule occurrences of one employee intersecting the window, recurrences
    expanded. Cancelled schedules are included (conflict detection skips a
    pair only when both sides are cancelled).
    """
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    rows = (
        db.query(ScheduleModel)
        .filter(
            ScheduleModel.employee_id == employee_id,
            ScheduleModel.start_time < window_end,
        )
        .order_by(ScheduleModel.start_time)
        .all()
    )
    occurrences: List[Schedule] = []
    for row in rows:
        occurrences.extend(expand_occurrences(_to_schema(row), window_start, window_end))
    return occurrences


def occurrences_starting_between(db: Session, window_start: datetime, window_end: datetime) -> List[Schedule]:
    """Non-cancelled occurrences (any employee) whose start lies in (window_start, window_end]."""
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    rows = (
        db.query(ScheduleModel)
        .filter(
            ScheduleModel.status != ScheduleStatus.CANCELLED,
            ScheduleModel.start_time <= window_end,
        )
        .all()
    )
    found = []
    # an occurrence starting exactly at window_end still intersects [window_start, window_end + 1s)
    search_end = window_end + timedelta(seconds=1)
    for row in rows:
        for occurrence in expand_occurrences(_to_schema(row), window_start, search_end):
            if window_start < occurrence.start_time <= window_end:
                found.append(occurrence)
    return sorted(found, key=lambda s: (s.start_time, s.schedule_id))


def _coerce_change_value(field: str, value: Any) -> Any:
    if field in ("start_time", "end_time"):
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise MalformedInputError(f"Invalid datetime for {field}", context={"value": value})
        if not isinstance(value, datetime):
            raise MalformedInputError(f"Invalid datetime for {field}", context={"value": value})
        return ensure_utc(value)
    if field == "break_allowance_minutes":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise MalformedInputError("break_allowance_minutes must be a non-negative integer",
                                      context={"value": value})
        return value
    if field == "status":
        try:
            return ScheduleStatus(value)
        except ValueError:
            raise MalformedInputError("Unknown schedule status", context={"value": value})
    return str(value)


def apply_schedule_change(db: Session, schedule_id: str, change: ScheduleChangeRequest) -> ScheduleChange:
    """
    Change one field of a schedule and record the change

    Cancellation is a soft delete (status=cancelled). Sessions that already
    exist keep the schedule times they were created with; an admin
    ``extend_schedule`` override is the way to move a live session's end.

    Raises:
        PreconditionError: Unknown schedule or field
        MalformedInputError: The new value is invalid or leaves end before start
    """
    row = db.query(ScheduleModel).filter(ScheduleModel.schedule_id == schedule_id).first()
    if not row:
        raise NotFoundError(f"Schedule {schedule_id} not found", code="schedule_not_found")
    if change.field not in CHANGEABLE_FIELDS:
        raise PreconditionError(
            f"Field {change.field} cannot be changed",
            code="field_not_changeable",
            context={"allowed": list(CHANGEABLE_FIELDS)},
        )

    new_value = _coerce_change_value(change.field, change.new_value)
    old_value = getattr(row, change.field)
    start = new_value if change.field == "start_time" else ensure_utc(row.start_time)
    end = new_value if change.field == "end_time" else ensure_utc(row.end_time)
    if end <= start:
        raise MalformedInputError("Schedule end_time must be after start_time")

    setattr(row, change.field, new_value)
    changed_at = now_utc()
    record = ScheduleChangeModel(
        schedule_id=schedule_id,
        changed_by=change.changed_by,
        reason=change.reason,
        field=change.field,
        old_value=sanitize_for_json(old_value),
        new_value=sanitize_for_json(new_value),
        changed_at=changed_at,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    _log.info("Schedule %s: %s changed by %s", schedule_id, change.field, change.changed_by)
    log_audit(db, change.changed_by, "SCHEDULE_CHANGE", "schedule", schedule_id,
              {"field": change.field, "reason": change.reason})
    return ScheduleChange.model_validate(record)
