"""
SessionStateMachine: the single mutation entry point for a ScheduleSession.

    scheduled -> monitoring_active -> clocked_in <-> on_break -> completed
                                \\-> no_show
    any active state -> error -> (prior state once resolved / repaired) or archived

Overtime is an orthogonal flag (is_in_overtime) layered on clocked_in/on_break.

apply_event takes a snapshot and an input and returns a new snapshot plus the
events to append. The input snapshot is never mutated. Record ids created by a
transition are derived from the input's event_id, so evaluating the same input
against the same snapshot twice gives identical results.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.errors import ConflictError, MalformedInputError, PreconditionError
from app.schemas.policy import CompanyPolicySettings, ConsentSettings
from app.schemas.schedule import JobSite, Schedule
from app.schemas.schedule_session import (
    AdminOverrideRecord,
    BreakPeriod,
    BreakType,
    ErrorSeverity,
    OvertimePeriod,
    OvertimeReason,
    PRE_WORK_STATUSES,
    ScheduleSession,
    ScheduleSessionEvent,
    SessionError,
    SessionErrorType,
    SessionEventType,
    SessionStatus,
    TERMINAL_STATUSES,
    TriggeredBy,
    WORKING_STATUSES,
)
from app.schemas.session_events import (
    AdminAction,
    AdminOverride,
    AnomalyReport,
    LocationSample,
    ManualAction,
    ManualActionKind,
    TimeTick,
)
from app.services.compliance_service import apply_metrics, recompute_metrics
from app.services.duration_service import (
    continuous_work_seconds,
    durations_for_session,
    instant_worked_reached,
)
from app.services.geofence_service import PresenceReading, distance_meters, evaluate_presence
from app.utils.datetime_utils import ensure_utc, minutes_between, now_utc, to_local
from app.utils.json_serializer import sanitize_for_json

_log = logging.getLogger(__name__)

_EXPLICIT_ACTORS = (TriggeredBy.EMPLOYEE, TriggeredBy.ADMIN)


@dataclass
class TransitionResult:
    session: ScheduleSession
    events: List[ScheduleSessionEvent] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return bool(self.events)


def create_session(
    schedule: Schedule,
    *,
    job_site: Optional[JobSite] = None,
    policy: Optional[CompanyPolicySettings] = None,
    now: Optional[datetime] = None,
    session_id: Optional[str] = None,
    created_by: str = "system",
) -> ScheduleSession:
    """
    Build the initial session for one schedule occurrence.

    The session starts in ``scheduled`` with a single session_created event;
    monitoring starts on the first TimeTick or location sample inside the
    monitoring window.

    Raises:
        MalformedInputError: If the schedule ends at or before its start
    """
    if schedule.end_time <= schedule.start_time:
        raise MalformedInputError(
            f"Schedule {schedule.schedule_id} ends before it starts",
            context={"schedule_id": schedule.schedule_id},
        )
    now = ensure_utc(now) if now is not None else now_utc()
    policy = policy or CompanyPolicySettings()
    occurrence_start = schedule.occurrence_start or schedule.start_time
    session_id = session_id or f"{schedule.schedule_id}:{occurrence_start.strftime('%Y%m%dT%H%M%SZ')}"

    session = ScheduleSession(
        session_id=session_id,
        schedule_id=schedule.schedule_id,
        employee_id=schedule.employee_id,
        job_site_id=schedule.job_site_id,
        company_id=schedule.company_id,
        occurrence_start=occurrence_start,
        scheduled_start=schedule.start_time,
        scheduled_end=schedule.end_time,
        time_zone=schedule.time_zone,
        local_scheduled_start=to_local(schedule.start_time, schedule.time_zone),
        local_scheduled_end=to_local(schedule.end_time, schedule.time_zone),
        job_site=job_site,
        created_at=now,
        updated_at=now,
        created_by=created_by,
        last_modified_by=created_by,
    )
    session.events.append(ScheduleSessionEvent(
        event_id=f"created:{session_id}",
        timestamp=now,
        event_type=SessionEventType.SESSION_CREATED,
        triggered_by=TriggeredBy.SCHEDULE,
        actor_id=created_by,
        details="Session created for schedule occurrence",
        metadata=sanitize_for_json({
            "schedule_id": schedule.schedule_id,
            "occurrence_start": occurrence_start,
            "shift_type": schedule.shift_type,
        }),
    ))
    apply_metrics(session, recompute_metrics(session, policy, now))
    return session


class _Draft:
    """A deep copy of the session under transition plus the effects recorded so far."""

    def __init__(self, session: ScheduleSession, source, ts: datetime):
        self.session = session
        self.source = source
        self.ts = ts
        self.meta: Dict[str, Any] = {}

    def _note(self, key: str, item: Dict[str, Any]) -> None:
        self.meta.setdefault(key, []).append(item)

    def open_break(
        self,
        break_type: BreakType,
        triggered_by: TriggeredBy,
        actor_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> BreakPeriod:
        s = self.session
        at = at or self.ts
        period = BreakPeriod(
            break_id=f"brk:{self.source.event_id}",
            start_time=at,
            break_type=break_type,
            triggered_by=triggered_by,
            actor_id=actor_id,
        )
        s.break_periods.append(period)
        s.currently_on_break = True
        s.status = SessionStatus.ON_BREAK
        self._note("breaks_opened", {
            "break_id": period.break_id,
            "start_time": at.isoformat(),
            "break_type": break_type.value,
        })
        return period

    def close_break(self, at: Optional[datetime] = None) -> Optional[BreakPeriod]:
        s = self.session
        period = s.open_break()
        if period is None:
            return None
        at = max(at or self.ts, period.start_time)
        period.end_time = at
        period.duration_minutes = minutes_between(period.start_time, at)
        s.currently_on_break = False
        if s.status == SessionStatus.ON_BREAK:
            s.status = SessionStatus.CLOCKED_IN
        if s.status_before_error == SessionStatus.ON_BREAK:
            s.status_before_error = SessionStatus.CLOCKED_IN
        self._note("breaks_closed", {"break_id": period.break_id, "end_time": at.isoformat()})
        return period

    def clock_in(self, at: datetime, auto: bool) -> None:
        s = self.session
        s.clocked_in = True
        s.clock_in_time = at
        s.clock_out_time = None
        s.auto_clock_in_triggered = auto
        s.departure_time = None
        s.status = SessionStatus.CLOCKED_IN
        self.meta["clock_in_at"] = at.isoformat()

    def clock_out(self, at: datetime, auto: bool, policy: CompanyPolicySettings) -> None:
        s = self.session
        if s.clock_in_time is not None:
            at = max(at, s.clock_in_time)
        self.close_break(at)

        open_ot = s.open_overtime()
        if open_ot is not None:
            open_ot.end_time = max(at, open_ot.start_time)
            open_ot.duration_minutes = minutes_between(open_ot.start_time, open_ot.end_time)
        elif s.clock_in_time is not None and policy.allow_overtime:
            # threshold crossed between ticks: record the period retroactively
            totals = durations_for_session(s.model_copy(update={"clock_out_time": at}), at)
            if totals.worked_seconds > policy.overtime_threshold_minutes * 60:
                start = instant_worked_reached(
                    s.clock_in_time, s.break_periods, policy.overtime_threshold_minutes, at
                ) or at
                s.overtime_periods.append(OvertimePeriod(
                    overtime_id=f"ot:{self.source.event_id}",
                    start_time=start,
                    end_time=at,
                    duration_minutes=minutes_between(start, at),
                    reason=OvertimeReason.SCHEDULE_OVERRUN,
                ))
                self.meta["overtime_recorded"] = {"start_time": start.isoformat(), "end_time": at.isoformat()}

        s.is_in_overtime = False
        s.clocked_in = False
        s.clock_out_time = at
        s.auto_clock_out_triggered = auto
        s.status = SessionStatus.COMPLETED
        s.status_before_error = None
        self.meta["clock_out_at"] = at.isoformat()

    def record_error(
        self,
        error_type: SessionErrorType,
        message: str,
        severity: ErrorSeverity,
    ) -> SessionError:
        s = self.session
        error = SessionError(
            error_id=f"err:{self.source.event_id}",
            error_type=error_type,
            message=message,
            severity=severity,
            timestamp=self.ts,
        )
        s.errors.append(error)
        if severity == ErrorSeverity.CRITICAL and s.status not in TERMINAL_STATUSES and s.status != SessionStatus.ERROR:
            s.status_before_error = s.status
            s.status = SessionStatus.ERROR
            self.meta["entered_error_state"] = True
        self.meta.update({
            "error_id": error.error_id,
            "error_type": error_type.value,
            "severity": severity.value,
        })
        return error

    def resolve_errors(self, error_type: SessionErrorType, resolved_by: str, resolution: str) -> None:
        resolved = []
        for error in self.session.errors:
            if not error.resolved and error.error_type == error_type:
                error.resolved = True
                error.resolved_at = self.ts
                error.resolved_by = resolved_by
                error.resolution = resolution
                resolved.append(error.error_id)
        if resolved:
            self.meta["errors_resolved"] = resolved

    def emit(
        self,
        event_type: SessionEventType,
        triggered_by: TriggeredBy,
        *,
        actor_id: Optional[str] = None,
        details: str = "",
        location=None,
        accuracy: Optional[float] = None,
        **extra: Any,
    ) -> ScheduleSessionEvent:
        return ScheduleSessionEvent(
            event_id=self.source.event_id,
            timestamp=self.ts,
            event_type=event_type,
            triggered_by=triggered_by,
            actor_id=actor_id,
            location=location,
            accuracy=accuracy,
            details=details,
            metadata=sanitize_for_json({**self.meta, **extra}),
        )


def _state_summary(session: ScheduleSession) -> Dict[str, Any]:
    return sanitize_for_json({
        "status": session.status,
        "clocked_in": session.clocked_in,
        "currently_on_break": session.currently_on_break,
        "is_in_overtime": session.is_in_overtime,
        "clock_in_time": session.clock_in_time,
        "clock_out_time": session.clock_out_time,
        "scheduled_end": session.scheduled_end,
        "unresolved_errors": len(session.unresolved_errors()),
    })


class SessionStateMachine:
    """
    Validates and applies transitions for one company's sessions.

    Policy, job site and consent are bound at construction; a policy change
    takes effect for machines built afterwards and never rewrites past events.
    A consent of None means the caller has already gated tracking.
    """

    def __init__(
        self,
        policy: CompanyPolicySettings,
        job_site: Optional[JobSite] = None,
        consent: Optional[ConsentSettings] = None,
    ):
        self.policy = policy
        self.job_site = job_site
        self.consent = consent

    def apply_event(self, session: ScheduleSession, event) -> TransitionResult:
        """
        Apply one input to a session snapshot.

        Args:
            session: Current snapshot (not mutated)
            event: LocationSample | ManualAction | TimeTick | AdminOverride | AnomalyReport

        Returns:
            TransitionResult with the new snapshot and the appended event
            (no events when the input is a duplicate or a no-op tick)

        Raises:
            PreconditionError: The input is not valid for the current state
            ConflictError: The input is older than the latest logged event
        """
        if session.has_event(event.event_id):
            _log.debug("Duplicate input %s for session %s ignored", event.event_id, session.session_id)
            return TransitionResult(session, [])

        ts = ensure_utc(event.timestamp)
        last = session.last_event_time()
        if last is not None and ts < last:
            raise ConflictError(
                "Input is older than the latest session event",
                code=ConflictError.OUT_OF_ORDER,
                context={
                    "session_id": session.session_id,
                    "event_id": event.event_id,
                    "timestamp": ts.isoformat(),
                    "latest_event_at": last.isoformat(),
                },
            )

        draft = _Draft(session.model_copy(deep=True), event, ts)
        if isinstance(event, LocationSample):
            emitted = self._on_location(draft)
        elif isinstance(event, ManualAction):
            emitted = self._on_manual(draft)
        elif isinstance(event, TimeTick):
            emitted = self._on_tick(draft)
        elif isinstance(event, AdminOverride):
            emitted = self._on_admin(draft)
        elif isinstance(event, AnomalyReport):
            emitted = self._on_anomaly(draft)
        else:
            raise MalformedInputError(f"Unsupported session input: {type(event).__name__}")

        if emitted is None:
            return TransitionResult(session, [])

        updated = draft.session
        if updated.is_terminal:
            updated.is_in_overtime = False
        else:
            crossed = self._catch_up_overtime(updated, ts, event.event_id)
            if crossed is not None:
                emitted = emitted.model_copy(update={"metadata": {**emitted.metadata, "overtime_started": crossed}})
        updated.events.append(emitted)
        updated.updated_at = ts
        updated.last_modified_by = emitted.actor_id or emitted.triggered_by.value
        apply_metrics(updated, recompute_metrics(updated, self.policy, ts))

        _log.debug(
            "Session %s: %s -> %s via %s (%s)",
            session.session_id, session.status.value, updated.status.value,
            emitted.event_type.value, emitted.event_id,
        )
        return TransitionResult(updated, [emitted])

    # ------------------------------------------------------------------ helpers

    def _job_site(self, session: ScheduleSession) -> Optional[JobSite]:
        return session.job_site or self.job_site

    def _consent_allows_tracking(self) -> bool:
        return self.consent is None or self.consent.tracking_permitted

    def _earliest_clock_in(self, session: ScheduleSession) -> Optional[datetime]:
        if self.policy.allow_clock_in_early:
            return None
        return session.scheduled_start - timedelta(minutes=self.policy.clock_in_buffer_minutes)

    def _in_monitoring_window(self, session: ScheduleSession, ts: datetime) -> bool:
        opens = session.scheduled_start - timedelta(minutes=self.policy.monitoring_window_minutes)
        return opens <= ts < session.scheduled_end

    def _grace(self) -> timedelta:
        return timedelta(minutes=self.policy.geofence_exit_grace_period_minutes)

    @staticmethod
    def _explicit_action_at(session: ScheduleSession, ts: datetime) -> bool:
        """An employee or admin event already sits at this exact instant."""
        for event in reversed(session.events):
            if event.timestamp < ts:
                return False
            if event.timestamp == ts and event.triggered_by in _EXPLICIT_ACTORS:
                return True
        return False

    @staticmethod
    def _automatic_at(session: ScheduleSession, ts: datetime) -> bool:
        """The latest logged event is an automatic one at this exact instant."""
        if not session.events:
            return False
        latest = session.events[-1]
        return latest.timestamp == ts and latest.triggered_by not in _EXPLICIT_ACTORS

    def _overtime_reached(self, session: ScheduleSession, ts: datetime) -> Optional[datetime]:
        """Instant worked time passed the threshold, or None while still under it."""
        if session.status not in WORKING_STATUSES or session.is_in_overtime or session.clock_in_time is None:
            return None
        threshold = self.policy.overtime_threshold_minutes
        if durations_for_session(session, ts).worked_seconds <= threshold * 60:
            return None
        return instant_worked_reached(session.clock_in_time, session.break_periods, threshold, ts) or ts

    @staticmethod
    def _open_overtime(session: ScheduleSession, start: datetime, event_id: str) -> OvertimePeriod:
        period = OvertimePeriod(
            overtime_id=f"ot:{event_id}",
            start_time=start,
            reason=OvertimeReason.SCHEDULE_OVERRUN,
        )
        session.overtime_periods.append(period)
        session.is_in_overtime = True
        _log.info("Session %s: overtime started at %s", session.session_id, start.isoformat())
        return period

    def _catch_up_overtime(self, session: ScheduleSession, ts: datetime, event_id: str) -> Optional[Dict[str, Any]]:
        """
        Open overtime when a transition other than the overtime tick leaves worked
        time past the threshold. With overtime disallowed the next tick clocks out.
        """
        if not self.policy.allow_overtime:
            return None
        reached = self._overtime_reached(session, ts)
        if reached is None:
            return None
        period = self._open_overtime(session, reached, event_id)
        return sanitize_for_json({"overtime_id": period.overtime_id, "overtime_start": reached})

    def _auto_clock_in_ready(self, session: ScheduleSession, ts: datetime) -> bool:
        if session.status != SessionStatus.MONITORING_ACTIVE or not self.policy.auto_clock_in_enabled:
            return False
        if not self._consent_allows_tracking():
            return False
        if not session.employee_present or session.present_since is None:
            return False
        if ts >= session.scheduled_end:
            return False
        earliest = self._earliest_clock_in(session)
        if earliest is not None and ts < earliest:
            return False
        dwell = (ts - session.present_since).total_seconds()
        return dwell >= self.policy.minimum_time_at_site_minutes * 60

    def _grace_expired(self, session: ScheduleSession, ts: datetime) -> bool:
        """
        Absent past the exit grace period while clocked in. A manual, required
        or auto break suppresses the rule; only a geofence_exit break counts.
        """
        if session.status not in WORKING_STATUSES or session.employee_present:
            return False
        if session.departure_time is None:
            return False
        open_break = session.open_break()
        if open_break is not None and open_break.break_type != BreakType.GEOFENCE_EXIT:
            return False
        return ts >= session.departure_time + self._grace()

    def _grace_clock_out(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        effective = s.departure_time + self._grace()
        draft.clock_out(effective, auto=True, policy=self.policy)
        _log.info("Session %s: geofence grace expired, clocked out at %s", s.session_id, effective.isoformat())
        return draft.emit(
            SessionEventType.AUTO_CLOCK_OUT,
            TriggeredBy.GEOFENCE,
            details="Did not return to the job site within the grace period",
            reason="geofence_grace_expired",
            effective_at=effective,
        )

    def _restored_status(self, session: ScheduleSession) -> SessionStatus:
        if session.clocked_in:
            return SessionStatus.ON_BREAK if session.open_break() is not None else SessionStatus.CLOCKED_IN
        if session.status_before_error in PRE_WORK_STATUSES:
            return session.status_before_error
        return SessionStatus.SCHEDULED

    # ----------------------------------------------------------------- location

    def _on_location(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        sample: LocationSample = draft.source
        ts = draft.ts
        if s.status in TERMINAL_STATUSES:
            return None

        previous_fix, previous_fix_at = s.last_location, s.last_location_update
        s.last_location_update = ts
        job_site = self._job_site(s)
        where = {"location": sample.position, "accuracy": sample.accuracy}

        if job_site is None:
            if any(e.error_type == SessionErrorType.MISSING_JOB_SITE for e in s.unresolved_errors()):
                return draft.emit(SessionEventType.LOCATION_UPDATE, TriggeredBy.SYSTEM, presence="unknown", **where)
            draft.record_error(
                SessionErrorType.MISSING_JOB_SITE,
                f"Job site {s.job_site_id} has no geofence data; presence cannot be evaluated",
                ErrorSeverity.ERROR,
            )
            return draft.emit(SessionEventType.ERROR_OCCURRED, TriggeredBy.SYSTEM, details="Missing job site", **where)

        accurate = sample.accuracy <= self.policy.geofence_accuracy_meters
        if accurate and previous_fix is not None and previous_fix_at is not None:
            elapsed = max((ts - previous_fix_at).total_seconds(), 1.0)
            speed = distance_meters(previous_fix, sample.position) / elapsed
            if speed > self.policy.max_plausible_speed_mps:
                draft.record_error(
                    SessionErrorType.IMPLAUSIBLE_LOCATION,
                    f"Implausible location jump ({speed:.0f} m/s)",
                    ErrorSeverity.WARNING,
                )
                return draft.emit(
                    SessionEventType.ERROR_OCCURRED,
                    TriggeredBy.GEOFENCE,
                    details="Implausible GPS jump ignored",
                    speed_mps=round(speed, 1),
                    **where,
                )

        reading = evaluate_presence(sample.position, sample.accuracy, job_site, self.policy)
        if not reading.conclusive:
            return draft.emit(SessionEventType.LOCATION_UPDATE, TriggeredBy.GEOFENCE, presence="inconclusive", **where)

        s.last_location = sample.position
        draft.resolve_errors(SessionErrorType.LOCATION_TIMEOUT, "system", "Location updates resumed")
        automatic = s.status != SessionStatus.ERROR and not self._explicit_action_at(s, ts)
        if reading.inside:
            return self._on_inside(draft, reading, automatic, where)
        return self._on_outside(draft, reading, automatic, where)

    def _on_inside(self, draft: _Draft, reading: PresenceReading, automatic: bool, where) -> ScheduleSessionEvent:
        s = draft.session
        ts = draft.ts
        arrived_now = not s.employee_present
        if arrived_now:
            s.employee_present = True
            s.present_since = ts
            if s.arrival_time is None:
                s.arrival_time = ts
        distance = round(reading.distance_meters, 1)
        presence_event = SessionEventType.EMPLOYEE_ARRIVED if arrived_now else SessionEventType.LOCATION_UPDATE

        if not automatic:
            return draft.emit(presence_event, TriggeredBy.GEOFENCE, presence="inside",
                              distance_meters=distance, automatic_suppressed=True, **where)

        open_break = s.open_break()
        if s.status == SessionStatus.ON_BREAK and open_break is not None and open_break.break_type == BreakType.GEOFENCE_EXIT:
            closed = draft.close_break(ts)
            return draft.emit(SessionEventType.BREAK_ENDED, TriggeredBy.GEOFENCE,
                              details="Returned to the job site", break_id=closed.break_id,
                              duration_minutes=closed.duration_minutes, distance_meters=distance, **where)

        promoted = False
        if s.status == SessionStatus.SCHEDULED and self._in_monitoring_window(s, ts):
            s.status = SessionStatus.MONITORING_ACTIVE
            promoted = True

        if self._auto_clock_in_ready(s, ts):
            draft.clock_in(ts, auto=True)
            _log.info("Session %s: auto clock-in at %s", s.session_id, ts.isoformat())
            return draft.emit(SessionEventType.AUTO_CLOCK_IN, TriggeredBy.GEOFENCE,
                              details="Automatic clock-in on arrival", distance_meters=distance,
                              arrived=arrived_now, monitoring_started=promoted, **where)
        if promoted:
            return draft.emit(SessionEventType.MONITORING_STARTED, TriggeredBy.GEOFENCE,
                              presence="inside", arrived=arrived_now, distance_meters=distance, **where)
        return draft.emit(presence_event, TriggeredBy.GEOFENCE, presence="inside", distance_meters=distance, **where)

    def _on_outside(self, draft: _Draft, reading: PresenceReading, automatic: bool, where) -> ScheduleSessionEvent:
        s = draft.session
        ts = draft.ts
        was_present = s.employee_present
        s.employee_present = False
        s.present_since = None
        distance = round(reading.distance_meters, 1)

        if not automatic:
            if was_present:
                s.departure_time = ts
            return draft.emit(
                SessionEventType.EMPLOYEE_DEPARTED if was_present else SessionEventType.LOCATION_UPDATE,
                TriggeredBy.GEOFENCE, presence="outside", distance_meters=distance,
                automatic_suppressed=True, **where,
            )

        if s.status in WORKING_STATUSES:
            if not was_present and self._grace_expired(s, ts):
                return self._grace_clock_out(draft)
            if was_present or s.departure_time is None:
                s.departure_time = ts
                grace_until = ts + self._grace()
                if s.status == SessionStatus.CLOCKED_IN and self.policy.geofence_based_breaks:
                    draft.open_break(BreakType.GEOFENCE_EXIT, TriggeredBy.GEOFENCE, at=ts)
                    return draft.emit(SessionEventType.BREAK_STARTED, TriggeredBy.GEOFENCE,
                                      details="Left the job site while clocked in",
                                      grace_expires_at=grace_until, distance_meters=distance, **where)
                extra = {}
                if s.status == SessionStatus.CLOCKED_IN:
                    extra["grace_expires_at"] = grace_until
                return draft.emit(SessionEventType.EMPLOYEE_DEPARTED, TriggeredBy.GEOFENCE,
                                  distance_meters=distance, **extra, **where)
            return draft.emit(SessionEventType.LOCATION_UPDATE, TriggeredBy.GEOFENCE,
                              presence="outside", distance_meters=distance, **where)

        if was_present:
            s.departure_time = ts
            return draft.emit(SessionEventType.EMPLOYEE_DEPARTED, TriggeredBy.GEOFENCE,
                              distance_meters=distance, **where)
        return draft.emit(SessionEventType.LOCATION_UPDATE, TriggeredBy.GEOFENCE,
                          presence="outside", distance_meters=distance, **where)

    # ------------------------------------------------------------------- manual

    def _on_manual(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        action: ManualAction = draft.source
        if s.status in TERMINAL_STATUSES:
            raise PreconditionError("Session is already closed", code="session_closed",
                                    context={"status": s.status.value})
        if s.status == SessionStatus.ERROR:
            raise PreconditionError(
                "Session is in error state; an administrator must resolve it first",
                code="session_in_error",
            )

        handlers: Dict[ManualActionKind, Callable[[_Draft], ScheduleSessionEvent]] = {
            ManualActionKind.CLOCK_IN: self._manual_clock_in,
            ManualActionKind.CLOCK_OUT: self._manual_clock_out,
            ManualActionKind.START_BREAK: self._manual_start_break,
            ManualActionKind.END_BREAK: self._manual_end_break,
        }
        return handlers[action.action](draft)

    def _manual_clock_in(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        action: ManualAction = draft.source
        ts = draft.ts
        if s.auto_clock_in_triggered and s.clock_in_time == ts and self._automatic_at(s, ts):
            # the geofence clocked in at this same instant; the employee's clock-in takes it over
            s.auto_clock_in_triggered = False
            return draft.emit(SessionEventType.MANUAL_CLOCK_IN, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                              location=action.position, accuracy=action.accuracy,
                              took_over=SessionEventType.AUTO_CLOCK_IN.value)
        if s.status in WORKING_STATUSES:
            raise PreconditionError("Already clocked in", code="already_clocked_in")
        if ts >= s.scheduled_end:
            raise PreconditionError("The scheduled shift has already ended", code="schedule_ended")
        earliest = self._earliest_clock_in(s)
        if earliest is not None and ts < earliest:
            raise PreconditionError(
                f"Clock-in opens {self.policy.clock_in_buffer_minutes} minutes before the scheduled start",
                code="too_early",
                context={"earliest_clock_in": earliest.isoformat()},
            )
        if action.position is None:
            raise PreconditionError("A current location is required to clock in", code="location_required")
        job_site = self._job_site(s)
        if job_site is None:
            raise PreconditionError("The job site has no location configured", code="job_site_missing")

        if action.accuracy is None:
            raise PreconditionError(
                "Location accuracy is required to confirm you are on site",
                code="location_inaccurate",
                context={"accuracy": None, "required_accuracy": self.policy.geofence_accuracy_meters},
            )
        accuracy = action.accuracy
        reading = evaluate_presence(action.position, accuracy, job_site, self.policy)
        if not reading.conclusive:
            raise PreconditionError(
                f"Location accuracy {accuracy:.0f}m is too low to confirm you are on site",
                code="location_inaccurate",
                context={"accuracy": accuracy, "required_accuracy": self.policy.geofence_accuracy_meters},
            )
        if not reading.inside:
            raise PreconditionError(
                f"You are {reading.distance_meters:.0f}m away from {job_site.name}. "
                f"You must be within {reading.allowed_radius_meters:.0f}m to clock in.",
                code="outside_geofence",
                context={
                    "distance_meters": round(reading.distance_meters, 1),
                    "allowed_radius_meters": reading.allowed_radius_meters,
                },
            )

        if not s.employee_present:
            s.employee_present = True
            s.present_since = ts
        if s.arrival_time is None:
            s.arrival_time = ts
        s.last_location = action.position
        s.last_location_update = ts
        draft.clock_in(ts, auto=False)
        return draft.emit(SessionEventType.MANUAL_CLOCK_IN, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                          location=action.position, accuracy=action.accuracy,
                          distance_meters=round(reading.distance_meters, 1))

    def _manual_clock_out(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        action: ManualAction = draft.source
        if not s.clocked_in:
            raise PreconditionError("Not clocked in", code="not_clocked_in")
        if not self.policy.allow_clock_out_early and draft.ts < s.scheduled_end:
            raise PreconditionError(
                "Clocking out before the scheduled end is not allowed",
                code="too_early",
                context={"scheduled_end": s.scheduled_end.isoformat()},
            )
        draft.clock_out(draft.ts, auto=False, policy=self.policy)
        return draft.emit(SessionEventType.MANUAL_CLOCK_OUT, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                          location=action.position, accuracy=action.accuracy)

    def _manual_start_break(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        action: ManualAction = draft.source
        open_break = s.open_break()
        taken_over = (
            s.status == SessionStatus.ON_BREAK
            and open_break is not None
            and open_break.break_type != BreakType.MANUAL
            and open_break.start_time == draft.ts
            and self._automatic_at(s, draft.ts)
        )
        if taken_over:
            # an automatic break opened at this same instant becomes the employee's break
            previous_type = open_break.break_type
            open_break.break_type = BreakType.MANUAL
            open_break.triggered_by = TriggeredBy.EMPLOYEE
            open_break.actor_id = action.actor_id
            return draft.emit(SessionEventType.BREAK_STARTED, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                              location=action.position, accuracy=action.accuracy,
                              break_id=open_break.break_id, took_over=previous_type.value)
        if s.status == SessionStatus.ON_BREAK:
            raise PreconditionError("Already on a break", code="already_on_break")
        if s.status != SessionStatus.CLOCKED_IN:
            raise PreconditionError("Not clocked in", code="not_clocked_in")
        period = draft.open_break(BreakType.MANUAL, TriggeredBy.EMPLOYEE, actor_id=action.actor_id)
        return draft.emit(SessionEventType.BREAK_STARTED, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                          location=action.position, accuracy=action.accuracy, break_id=period.break_id)

    def _manual_end_break(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        action: ManualAction = draft.source
        if s.status != SessionStatus.ON_BREAK:
            raise PreconditionError("Not on a break", code="not_on_break")
        closed = draft.close_break(draft.ts)
        if not s.employee_present and s.departure_time is not None:
            # resuming work away from the site restarts the exit grace period
            s.departure_time = draft.ts
        return draft.emit(SessionEventType.BREAK_ENDED, TriggeredBy.EMPLOYEE, actor_id=action.actor_id,
                          location=action.position, accuracy=action.accuracy,
                          break_id=closed.break_id, duration_minutes=closed.duration_minutes)

    # --------------------------------------------------------------------- time

    def _on_tick(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if s.status in TERMINAL_STATUSES:
            return None
        if self._explicit_action_at(s, draft.ts):
            return None
        if s.status == SessionStatus.ERROR:
            return self._tick_archive(draft)

        checks = (
            self._tick_no_show,
            self._tick_grace_expiry,
            self._tick_auto_clock_out,
            self._tick_overtime,
            self._tick_required_break,
            self._tick_auto_end_break,
            self._tick_monitoring,
            self._tick_auto_clock_in,
            self._tick_health,
        )
        for check in checks:
            emitted = check(draft)
            if emitted is not None:
                return emitted
        return None

    def _tick_archive(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        critical = [e.timestamp for e in s.unresolved_errors() if e.severity == ErrorSeverity.CRITICAL]
        since = min(critical) if critical else s.updated_at
        if draft.ts - since < timedelta(hours=self.policy.error_archive_after_hours):
            return None
        s.status = SessionStatus.ARCHIVED
        _log.warning("Session %s archived after prolonged error state", s.session_id)
        return draft.emit(SessionEventType.SESSION_ARCHIVED, TriggeredBy.SYSTEM,
                          details="Archived after prolonged error state", error_since=since)

    def _tick_no_show(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        ts = draft.ts
        if s.status not in PRE_WORK_STATUSES or s.employee_present or s.clocked_in:
            return None
        grace = timedelta(minutes=self.policy.no_show_grace_period_minutes)
        if ts - s.scheduled_start <= grace:
            return None
        s.status = SessionStatus.NO_SHOW
        _log.info("Session %s: no-show declared", s.session_id)
        return draft.emit(SessionEventType.NO_SHOW, TriggeredBy.SCHEDULE,
                          details=f"No arrival within {self.policy.no_show_grace_period_minutes} minutes of scheduled start",
                          minutes_late=minutes_between(s.scheduled_start, ts))

    def _tick_grace_expiry(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        if self._grace_expired(draft.session, draft.ts):
            return self._grace_clock_out(draft)
        return None

    def _tick_auto_clock_out(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if not self.policy.auto_clock_out_at_end or s.status not in WORKING_STATUSES:
            return None
        effective = s.scheduled_end + timedelta(minutes=self.policy.clock_out_buffer_minutes)
        if draft.ts < effective:
            return None
        draft.clock_out(effective, auto=True, policy=self.policy)
        return draft.emit(SessionEventType.AUTO_CLOCK_OUT, TriggeredBy.SCHEDULE,
                          details="Automatic clock-out after scheduled end",
                          reason="scheduled_end", effective_at=effective)

    def _tick_overtime(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        reached = self._overtime_reached(s, draft.ts)
        if reached is None:
            return None

        if not self.policy.allow_overtime:
            draft.clock_out(reached, auto=True, policy=self.policy)
            return draft.emit(SessionEventType.AUTO_CLOCK_OUT, TriggeredBy.SYSTEM,
                              details="Overtime is not allowed; clocked out at the threshold",
                              reason="overtime_not_allowed", effective_at=reached)

        period = self._open_overtime(s, reached, draft.source.event_id)
        return draft.emit(SessionEventType.OVERTIME_STARTED, TriggeredBy.SYSTEM,
                          details=f"Worked time exceeded {self.policy.overtime_threshold_minutes} minutes",
                          overtime_id=period.overtime_id, overtime_start=reached)

    def _tick_required_break(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if not (self.policy.auto_start_break or self.policy.schedule_based_breaks):
            return None
        if s.status != SessionStatus.CLOCKED_IN:
            return None
        if continuous_work_seconds(s, draft.ts) < self.policy.minimum_work_before_break_minutes * 60:
            return None
        period = draft.open_break(BreakType.REQUIRED, TriggeredBy.SYSTEM)
        return draft.emit(SessionEventType.BREAK_STARTED, TriggeredBy.SYSTEM,
                          details="Required break started", break_id=period.break_id, reason="required_break")

    def _tick_auto_end_break(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if not self.policy.auto_end_break or s.status != SessionStatus.ON_BREAK:
            return None
        period = s.open_break()
        if period is None or period.break_type not in (BreakType.REQUIRED, BreakType.AUTO):
            return None
        due = period.start_time + timedelta(minutes=self.policy.required_break_duration_minutes)
        if draft.ts < due:
            return None
        closed = draft.close_break(due)
        return draft.emit(SessionEventType.BREAK_ENDED, TriggeredBy.SYSTEM,
                          details="Break ended after the required duration",
                          break_id=closed.break_id, duration_minutes=closed.duration_minutes)

    def _tick_monitoring(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if s.status != SessionStatus.SCHEDULED or not self._in_monitoring_window(s, draft.ts):
            return None
        s.status = SessionStatus.MONITORING_ACTIVE
        return draft.emit(SessionEventType.MONITORING_STARTED, TriggeredBy.SCHEDULE,
                          details="Monitoring window opened")

    def _tick_auto_clock_in(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        if not self._auto_clock_in_ready(s, draft.ts):
            return None
        draft.clock_in(draft.ts, auto=True)
        _log.info("Session %s: auto clock-in after minimum time at site", s.session_id)
        return draft.emit(SessionEventType.AUTO_CLOCK_IN, TriggeredBy.GEOFENCE,
                          details="Automatic clock-in after minimum time at site",
                          reason="minimum_time_at_site_reached")

    def _tick_health(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        ts = draft.ts
        if s.status not in WORKING_STATUSES:
            return None
        unresolved = {e.error_type for e in s.unresolved_errors()}

        stale_after = s.scheduled_end + timedelta(hours=self.policy.stale_session_hours)
        if ts >= stale_after and SessionErrorType.STALE_SESSION not in unresolved:
            s.last_health_check = ts
            draft.record_error(
                SessionErrorType.STALE_SESSION,
                f"Session still active {self.policy.stale_session_hours}+ hours after scheduled end",
                ErrorSeverity.ERROR,
            )
            return draft.emit(SessionEventType.ERROR_OCCURRED, TriggeredBy.SYSTEM, details="Stale session")

        reference = s.last_location_update or s.clock_in_time
        timeout = timedelta(minutes=self.policy.location_timeout_minutes)
        if reference is not None and ts - reference >= timeout and SessionErrorType.LOCATION_TIMEOUT not in unresolved:
            s.last_health_check = ts
            draft.record_error(
                SessionErrorType.LOCATION_TIMEOUT,
                f"No location update for {minutes_between(reference, ts)} minutes",
                ErrorSeverity.WARNING,
            )
            return draft.emit(SessionEventType.ERROR_OCCURRED, TriggeredBy.SYSTEM, details="Location timeout")
        return None

    # -------------------------------------------------------------------- admin

    def _on_admin(self, draft: _Draft) -> ScheduleSessionEvent:
        s = draft.session
        override: AdminOverride = draft.source
        if s.status == SessionStatus.ARCHIVED:
            raise PreconditionError("Archived sessions cannot be changed", code="session_archived")

        before = _state_summary(s)
        handlers: Dict[AdminAction, Callable[[_Draft], Tuple[SessionEventType, str]]] = {
            AdminAction.FORCE_CLOCK_IN: self._admin_force_clock_in,
            AdminAction.FORCE_CLOCK_OUT: self._admin_force_clock_out,
            AdminAction.START_BREAK: self._admin_start_break,
            AdminAction.END_BREAK: self._admin_end_break,
            AdminAction.EXTEND_SCHEDULE: self._admin_extend_schedule,
            AdminAction.TERMINATE_SESSION: self._admin_terminate,
            AdminAction.REPAIR_SESSION: self._admin_repair,
            AdminAction.APPROVE_OVERTIME: self._admin_approve_overtime,
            AdminAction.RESOLVE_ERROR: self._admin_resolve_error,
        }
        event_type, details = handlers[override.action](draft)

        record = AdminOverrideRecord(
            override_id=f"ovr:{override.event_id}",
            action=override.action.value,
            actor_id=override.actor_id,
            reason=override.reason,
            timestamp=draft.ts,
            params=sanitize_for_json(override.params),
            before=before,
            after=_state_summary(s),
        )
        s.admin_overrides.append(record)
        _log.info("Session %s: admin %s by %s (%s)", s.session_id, override.action.value,
                  override.actor_id, override.reason)
        return draft.emit(event_type, TriggeredBy.ADMIN, actor_id=override.actor_id, details=details,
                          override_id=record.override_id, admin_action=override.action.value,
                          reason=override.reason)

    def _admin_force_clock_in(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        if s.clocked_in:
            raise PreconditionError("Already clocked in", code="already_clocked_in")
        if s.status in (SessionStatus.COMPLETED, SessionStatus.CANCELLED):
            raise PreconditionError("Session is already closed", code="session_closed")
        if s.status == SessionStatus.ERROR:
            raise PreconditionError("Repair the session before forcing a clock-in", code="session_in_error")
        draft.clock_in(draft.ts, auto=False)
        return SessionEventType.MANUAL_CLOCK_IN, "Clock-in forced by administrator"

    def _admin_force_clock_out(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        if not draft.session.clocked_in:
            raise PreconditionError("Not clocked in", code="not_clocked_in")
        draft.clock_out(draft.ts, auto=False, policy=self.policy)
        return SessionEventType.MANUAL_CLOCK_OUT, "Clock-out forced by administrator"

    def _admin_start_break(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        override: AdminOverride = draft.source
        if s.status != SessionStatus.CLOCKED_IN:
            raise PreconditionError("A break can only start while clocked in", code="not_clocked_in")
        try:
            break_type = BreakType(override.params.get("break_type", BreakType.MANUAL.value))
        except ValueError:
            raise PreconditionError("Unknown break type", code="invalid_params",
                                    context={"break_type": override.params.get("break_type")})
        draft.open_break(break_type, TriggeredBy.ADMIN, actor_id=override.actor_id)
        return SessionEventType.BREAK_STARTED, "Break started by administrator"

    def _admin_end_break(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        if draft.session.open_break() is None:
            raise PreconditionError("There is no open break to end", code="not_on_break")
        draft.close_break(draft.ts)
        return SessionEventType.BREAK_ENDED, "Break ended by administrator"

    def _admin_extend_schedule(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        override: AdminOverride = draft.source
        if s.is_terminal:
            raise PreconditionError("Session is already closed", code="session_closed")
        minutes = override.params.get("minutes")
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise PreconditionError("extend_schedule needs a positive integer 'minutes'", code="invalid_params",
                                    context={"minutes": minutes})
        old_end = s.scheduled_end
        s.scheduled_end = old_end + timedelta(minutes=minutes)
        s.local_scheduled_end = to_local(s.scheduled_end, s.time_zone)
        draft.meta.update({"old_scheduled_end": old_end.isoformat(), "new_scheduled_end": s.scheduled_end.isoformat()})
        return SessionEventType.SCHEDULE_MODIFIED, f"Schedule extended by {minutes} minutes"

    def _admin_terminate(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        if s.is_terminal:
            raise PreconditionError("Session is already closed", code="session_closed")
        if s.clocked_in:
            draft.clock_out(draft.ts, auto=False, policy=self.policy)
        s.status = SessionStatus.CANCELLED
        s.status_before_error = None
        return SessionEventType.SESSION_TERMINATED, "Session terminated by administrator"

    def _admin_repair(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        if s.status != SessionStatus.ERROR:
            raise PreconditionError("Session is not in error state", code="not_in_error")
        s.status = self._restored_status(s)
        s.status_before_error = None
        return SessionEventType.SESSION_REPAIRED, f"Session repaired; restored to {s.status.value}"

    def _admin_approve_overtime(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        override: AdminOverride = draft.source
        wanted = override.params.get("overtime_id")
        pending = [
            p for p in s.overtime_periods
            if not p.approved and (wanted is None or p.overtime_id == wanted)
        ]
        if not pending:
            raise PreconditionError("No overtime awaiting approval", code="no_pending_overtime",
                                    context={"overtime_id": wanted})
        for period in pending:
            period.approved = True
            period.approved_by = override.actor_id
            period.approved_at = draft.ts
        draft.meta["overtime_approved"] = [p.overtime_id for p in pending]
        return SessionEventType.OVERTIME_APPROVED, f"Approved {len(pending)} overtime period(s)"

    def _admin_resolve_error(self, draft: _Draft) -> Tuple[SessionEventType, str]:
        s = draft.session
        override: AdminOverride = draft.source
        error_id = override.params.get("error_id")
        error = next((e for e in s.errors if e.error_id == error_id), None)
        if error is None:
            raise PreconditionError("Unknown session error", code="unknown_error", context={"error_id": error_id})
        if error.resolved:
            raise PreconditionError("Session error is already resolved", code="already_resolved",
                                    context={"error_id": error_id})
        error.resolved = True
        error.resolved_at = draft.ts
        error.resolved_by = override.actor_id
        error.resolution = override.params.get("resolution") or override.reason
        draft.meta["errors_resolved"] = [error.error_id]

        still_critical = any(e.severity == ErrorSeverity.CRITICAL for e in s.unresolved_errors())
        if s.status == SessionStatus.ERROR and not still_critical:
            s.status = self._restored_status(s)
            s.status_before_error = None
            draft.meta["restored_status"] = s.status.value
        return SessionEventType.ERROR_RESOLVED, f"Error {error.error_id} resolved"

    # ------------------------------------------------------------------ anomaly

    def _on_anomaly(self, draft: _Draft) -> Optional[ScheduleSessionEvent]:
        s = draft.session
        report: AnomalyReport = draft.source
        if s.status == SessionStatus.ARCHIVED:
            return None
        draft.record_error(report.error_type, report.message, report.severity)
        if report.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
            _log.warning("Session %s: %s (%s)", s.session_id, report.message, report.error_type.value)
        return draft.emit(SessionEventType.ERROR_OCCURRED, TriggeredBy.SYSTEM, actor_id=report.actor_id,
                          details=report.message, report=report.details)
