"""
Session service - load, apply and save around SessionStateMachine

The state machine is pure; everything with side effects (storage, hooks,
audit log, the periodic orchestrator pass) lives here.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, EngineError, MalformedInputError, NotFoundError, PreconditionError
from app.schemas.policy import CompanyPolicySettings, ConsentSettings
from app.schemas.schedule import ConflictSeverity, Schedule, ScheduleConflict
from app.schemas.schedule_session import ErrorSeverity, ScheduleSession, SessionErrorType
from app.schemas.session_events import AdminOverride, AnomalyReport, ManualAction, TimeTick
from app.services import notification_hooks
from app.services.audit_service import log_audit
from app.services.compliance_service import recompute_metrics
from app.services.conflict_service import can_move_schedule, detect_conflicts, validate_schedule
from app.services.policy_service import PolicyCache, get_company_policy
from app.services.schedule_service import expand_occurrences, get_schedule
from app.services.session_state_machine import SessionStateMachine, create_session
from app.services.session_store import ConsentStore, ScheduleStore, SessionStore
from app.utils.datetime_utils import ensure_utc, now_utc

_log = logging.getLogger(__name__)

# How far the orchestrator looks back for occurrences that should already have a session
ORCHESTRATOR_LOOKBACK = timedelta(hours=24)
ORCHESTRATOR_LOOKAHEAD = timedelta(hours=24)


def _policy_for(db: Session, company_id: str, policy_cache: Optional[PolicyCache]) -> CompanyPolicySettings:
    if policy_cache is not None:
        return policy_cache.get(db, company_id)
    return get_company_policy(db, company_id)


def build_machine(
    db: Session,
    session: ScheduleSession,
    policy_cache: Optional[PolicyCache] = None,
) -> SessionStateMachine:
    """State machine bound to the session's company policy, job site copy and employee consent."""
    policy = _policy_for(db, session.company_id, policy_cache)
    consent = ConsentStore(db).get(session.employee_id)
    return SessionStateMachine(policy, job_site=session.job_site, consent=consent)


def process_session_event(
    db: Session,
    session_id: str,
    event,
    policy_cache: Optional[PolicyCache] = None,
    retry_limit: Optional[int] = None,
) -> ScheduleSession:
    """
    Apply one input to a stored session and persist the result.

    A save that loses the optimistic version race is retried against a fresh
    load; the replayed input is re-validated from scratch, and a duplicate
    input (already applied by the other writer) becomes a no-op.

    Args:
        db: Database session
        session_id: Target session
        event: Any SessionInput variant
        policy_cache: Optional shared policy cache
        retry_limit: Reload-and-retry attempts (default settings.SAVE_RETRY_LIMIT)

    Returns:
        The stored snapshot (unchanged if the input was a duplicate or no-op)

    Raises:
        SessionNotFoundError, PreconditionError, ConflictError, MalformedInputError
    """
    store = SessionStore(db)
    limit = settings.SAVE_RETRY_LIMIT if retry_limit is None else retry_limit

    attempt = 0
    while True:
        session = store.load(session_id)
        machine = build_machine(db, session, policy_cache)
        result = machine.apply_event(session, event)
        if not result.accepted:
            return session
        try:
            stored = store.save(result.session, result.events)
            break
        except ConflictError as exc:
            if exc.code != ConflictError.STALE_SNAPSHOT or attempt >= limit:
                raise
            attempt += 1
            _log.info("Session %s: concurrent write, retrying %s (attempt %s/%s)",
                      session_id, event.event_id, attempt, limit)

    notification_hooks.publish_domain_events(stored, result.events)
    if isinstance(event, (ManualAction, AdminOverride)):
        prefix = "ADMIN_" if isinstance(event, AdminOverride) else "MANUAL_"
        log_audit(
            db=db,
            actor_id=event.actor_id,
            action=f"{prefix}{event.action.value.upper()}",
            entity_type="schedule_session",
            entity_id=session_id,
            meta={
                "event_id": event.event_id,
                "status": stored.status,
                "reason": getattr(event, "reason", None),
            },
        )
    return stored


def session_metrics(db: Session, session_id: str, now: Optional[datetime] = None):
    """Metrics recomputed as of ``now`` without storing anything."""
    session = SessionStore(db).load(session_id)
    policy = get_company_policy(db, session.company_id)
    return recompute_metrics(session, policy, now)


def open_session_for_schedule(
    db: Session,
    schedule_id: str,
    occurrence_start: Optional[datetime] = None,
    created_by: str = "system",
    now: Optional[datetime] = None,
    policy_cache: Optional[PolicyCache] = None,
) -> ScheduleSession:
    """
    Create and persist the session of one schedule occurrence

    Raises:
        NotFoundError: Unknown schedule
        PreconditionError: Cancelled schedule, or no such occurrence
        ConflictError: A session already exists for the occurrence
    """
    schedules = ScheduleStore(db)
    schedule = schedules.get(schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found", code="schedule_not_found")
    if schedule.is_cancelled:
        raise PreconditionError("Schedule is cancelled", code="schedule_cancelled")

    if schedule.recurrence_rule:
        if occurrence_start is None:
            raise PreconditionError("occurrence_start is required for recurring schedules",
                                    code="occurrence_required")
        occurrence_start = ensure_utc(occurrence_start)
        matches = [
            o for o in expand_occurrences(schedule, occurrence_start, occurrence_start + timedelta(seconds=1))
            if o.start_time == occurrence_start
        ]
        if not matches:
            raise PreconditionError("The schedule has no occurrence at that time", code="no_such_occurrence",
                                    context={"occurrence_start": occurrence_start.isoformat()})
        schedule = matches[0]
    elif occurrence_start is not None and ensure_utc(occurrence_start) != schedule.start_time:
        raise PreconditionError("The schedule has no occurrence at that time", code="no_such_occurrence",
                                context={"occurrence_start": ensure_utc(occurrence_start).isoformat()})

    policy = _policy_for(db, schedule.company_id, policy_cache)
    job_site = schedules.get_job_site(schedule.job_site_id)
    if job_site is None:
        _log.warning("Schedule %s references unknown job site %s", schedule_id, schedule.job_site_id)
    session = create_session(schedule, job_site=job_site, policy=policy, now=now, created_by=created_by)
    return SessionStore(db).create(session)


def _report_failure(db: Session, session_id: str, now: datetime, exc: Exception) -> None:
    report = AnomalyReport(
        event_id=f"failure:{session_id}:{now.isoformat()}",
        timestamp=now,
        error_type=SessionErrorType.AUTO_TRANSITION_FAILURE,
        message=f"Automatic transition failed: {exc}",
        severity=ErrorSeverity.ERROR,
        details={"exception": type(exc).__name__},
    )
    try:
        process_session_event(db, session_id, report)
    except Exception:
        db.rollback()
        _log.error("Could not record transition failure on session %s", session_id, exc_info=True)


def run_orchestrator_pass(
    db: Session,
    now: Optional[datetime] = None,
    policy_cache: Optional[PolicyCache] = None,
) -> Dict[str, int]:
    """
    One orchestrator pass:

    1. open sessions for occurrences whose monitoring window has begun
    2. deliver a TimeTick to every active session

    Returns:
        Counts: created, ticked (transitions applied), failed
    """
    now = ensure_utc(now) if now is not None else now_utc()
    counts = {"created": 0, "ticked": 0, "failed": 0}
    sessions = SessionStore(db)

    for occurrence in ScheduleStore(db).occurrences_starting_between(now - ORCHESTRATOR_LOOKBACK,
                                                                     now + ORCHESTRATOR_LOOKAHEAD):
        policy = _policy_for(db, occurrence.company_id, policy_cache)
        opens = occurrence.start_time - timedelta(minutes=policy.monitoring_window_minutes)
        if not (opens <= now < occurrence.end_time):
            continue
        occurrence_start = occurrence.occurrence_start or occurrence.start_time
        if sessions.find_by_occurrence(occurrence.schedule_id, occurrence_start) is not None:
            continue
        try:
            open_session_for_schedule(
                db,
                occurrence.schedule_id,
                occurrence.occurrence_start,
                created_by="orchestrator",
                now=now,
                policy_cache=policy_cache,
            )
            counts["created"] += 1
        except ConflictError:
            # another orchestrator created it first
            continue

    tick = TimeTick(now=now)
    for session_id in sessions.list_active():
        try:
            before = sessions.load(session_id)
            after = process_session_event(db, session_id, tick, policy_cache=policy_cache)
            if after.version != before.version:
                counts["ticked"] += 1
        except ConflictError as exc:
            # the session already holds a later event; the next pass catches up
            _log.debug("Tick for session %s skipped: %s", session_id, exc.message)
        except EngineError as exc:
            counts["failed"] += 1
            _log.warning("Tick for session %s rejected: %s", session_id, exc.message)
        except Exception as exc:
            counts["failed"] += 1
            db.rollback()
            _log.error("Tick for session %s failed", session_id, exc_info=True)
            _report_failure(db, session_id, now, exc)

    if counts["created"] or counts["ticked"] or counts["failed"]:
        _log.info("Orchestrator pass at %s: %s", now.isoformat(), counts)
    return counts


_CONFLICT_SEVERITY = {
    ConflictSeverity.ERROR: ErrorSeverity.ERROR,
    ConflictSeverity.WARNING: ErrorSeverity.WARNING,
}


def annotate_conflicts(
    db: Session,
    employee_id: str,
    window_start: datetime,
    window_end: datetime,
    now: Optional[datetime] = None,
) -> List[ScheduleConflict]:
    """
    Detect conflicts over an employee's stored schedules and record each one
    on the employee's live sessions for the involved schedules.

    Conflicts never block transitions; annotating is idempotent per conflict
    id and session.
    """
    now = ensure_utc(now) if now is not None else now_utc()
    schedules = ScheduleStore(db).active_schedules_for(employee_id, window_start, window_end)
    if not schedules:
        return []
    policy = get_company_policy(db, schedules[0].company_id)
    conflicts = detect_conflicts(schedules, policy)

    store = SessionStore(db)
    live = [s for s in store.list_for_employee(employee_id) if not s.is_terminal]
    for conflict in conflicts:
        notification_hooks.publish_conflict(conflict)
        for session in live:
            if session.schedule_id not in conflict.schedule_ids:
                continue
            last = session.last_event_time()
            report = AnomalyReport(
                event_id=f"conflict:{conflict.conflict_id}",
                timestamp=max(now, last) if last is not None else now,
                error_type=SessionErrorType.SCHEDULE_CONFLICT,
                message=conflict.message,
                severity=_CONFLICT_SEVERITY[conflict.severity],
                details={"conflict_id": conflict.conflict_id, "schedule_ids": conflict.schedule_ids},
            )
            try:
                process_session_event(db, session.session_id, report)
            except ConflictError as exc:
                _log.info("Conflict annotation for session %s deferred: %s", session.session_id, exc.message)
    return conflicts


def _conflict_window(schedule: Schedule, now: datetime):
    window_start = schedule.start_time - ORCHESTRATOR_LOOKBACK
    window_end = schedule.end_time + ORCHESTRATOR_LOOKAHEAD
    if schedule.recurrence_rule:
        # live sessions of a recurring schedule sit around the current occurrence
        window_start = max(window_start, now - ORCHESTRATOR_LOOKBACK)
        window_end = max(window_end, now + ORCHESTRATOR_LOOKAHEAD)
    return window_start, window_end


def reconcile_schedule_conflicts(
    db: Session,
    schedule_id: str,
    now: Optional[datetime] = None,
) -> List[ScheduleConflict]:
    """
    Conflicts a created or changed schedule introduces with the employee's
    other schedules. When there are any, the employee's live sessions are
    annotated the same way annotate_conflicts does it.

    Raises:
        NotFoundError: Unknown schedule
    """
    now = ensure_utc(now) if now is not None else now_utc()
    schedule = get_schedule(db, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found", code="schedule_not_found")

    window_start, window_end = _conflict_window(schedule, now)
    occurrences = ScheduleStore(db).active_schedules_for(schedule.employee_id, window_start, window_end)
    own = [s for s in occurrences if s.schedule_id == schedule_id]
    others = [s for s in occurrences if s.schedule_id != schedule_id]
    policy = get_company_policy(db, schedule.company_id)

    introduced: Dict[str, ScheduleConflict] = {}
    for occurrence in own:
        for conflict in validate_schedule(occurrence, others, policy):
            introduced.setdefault(conflict.conflict_id, conflict)
    if not introduced:
        return []

    for conflict in introduced.values():
        _log.warning("Schedule %s conflicts with %s: %s", schedule_id,
                     ", ".join(i for i in conflict.schedule_ids if i != schedule_id), conflict.message)
    annotate_conflicts(db, schedule.employee_id, window_start, window_end, now=now)
    return list(introduced.values())


def schedule_move_allowed(db: Session, schedule_id: str, new_start: datetime, new_end: datetime) -> bool:
    """True if moving a stored schedule to [new_start, new_end) would create no overlap."""
    schedule = get_schedule(db, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found", code="schedule_not_found")
    new_start = ensure_utc(new_start)
    new_end = ensure_utc(new_end)
    if new_end <= new_start:
        raise MalformedInputError("end must be after start")
    moved = schedule.model_copy(update={"start_time": new_start, "end_time": new_end})
    window_start, window_end = _conflict_window(moved, now_utc())
    existing = [
        s for s in ScheduleStore(db).active_schedules_for(schedule.employee_id, window_start, window_end)
        if s.schedule_id != schedule_id
    ]
    return can_move_schedule(schedule, new_start, new_end, existing, get_company_policy(db, schedule.company_id))


class DatabaseSessionGateway:
    """
    Session access for background workers, each call in its own DB session.

    Used by the TrackingCoordinator, whose threads must not share a
    request-scoped SQLAlchemy session.
    """

    def __init__(self, session_factory: Callable[[], Session], policy_cache: Optional[PolicyCache] = None):
        self.session_factory = session_factory
        self.policy_cache = policy_cache

    def load(self, session_id: str) -> ScheduleSession:
        db = self.session_factory()
        try:
            return SessionStore(db).load(session_id)
        finally:
            db.close()

    def apply(self, session_id: str, event) -> ScheduleSession:
        db = self.session_factory()
        try:
            return process_session_event(db, session_id, event, policy_cache=self.policy_cache)
        finally:
            db.close()

    def consent(self, employee_id: str) -> ConsentSettings:
        db = self.session_factory()
        try:
            return ConsentStore(db).get(employee_id)
        finally:
            db.close()
