"""
Compliance scoring for schedule sessions.

Every score is recomputed from the session's recorded facts on each call;
nothing is patched incrementally.
"""
from datetime import datetime
from typing import Optional

from app.schemas.policy import CompanyPolicySettings
from app.schemas.schedule_session import (
    ErrorSeverity,
    HealthStatus,
    ScheduleSession,
    SessionMetrics,
    SessionStatus,
)
from app.services.duration_service import durations_for_session
from app.utils.datetime_utils import ensure_utc, minutes_between, now_utc

ERROR_PENALTY = 25.0
WARNING_PENALTY = 10.0


def punctuality_score(session: ScheduleSession, policy: CompanyPolicySettings) -> float:
    """100 minus the per-minute penalty for lateness; early arrival is not penalised."""
    arrived = session.arrival_time or session.clock_in_time
    if arrived is None:
        return 0.0 if session.status == SessionStatus.NO_SHOW else 100.0
    late = minutes_between(session.scheduled_start, arrived)
    return max(0.0, 100.0 - policy.punctuality_penalty_per_minute * late)


def attendance_rate(worked_minutes: int, scheduled_minutes: int) -> float:
    """Worked / scheduled as a percentage, capped at 100."""
    if scheduled_minutes <= 0:
        return 100.0 if worked_minutes > 0 else 0.0
    return round(min(100.0, worked_minutes / scheduled_minutes * 100.0), 2)


def required_break_count(worked_minutes: int, policy: CompanyPolicySettings) -> int:
    """One required break per full interval of work beyond the first."""
    if worked_minutes <= 0:
        return 0
    return (worked_minutes - 1) // policy.minimum_work_before_break_minutes


def break_adherence(session: ScheduleSession, worked_minutes: int, policy: CompanyPolicySettings) -> float:
    required = required_break_count(worked_minutes, policy)
    if required == 0:
        return 100.0
    qualifying = sum(
        1 for b in session.break_periods
        if b.duration_minutes is not None and b.duration_minutes >= policy.required_break_duration_minutes
    )
    return round(min(100.0, qualifying / required * 100.0), 2)


def error_free_score(session: ScheduleSession) -> float:
    score = 100.0
    for err in session.unresolved_errors():
        if err.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
            score -= ERROR_PENALTY
        elif err.severity == ErrorSeverity.WARNING:
            score -= WARNING_PENALTY
    return max(0.0, score)


def health_status(session: ScheduleSession) -> HealthStatus:
    """Worst unresolved severity; info rows do not affect health."""
    severities = {e.severity for e in session.unresolved_errors()}
    if ErrorSeverity.CRITICAL in severities:
        return HealthStatus.CRITICAL
    if ErrorSeverity.ERROR in severities:
        return HealthStatus.ERROR
    if ErrorSeverity.WARNING in severities:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def compliance_score(
    punctuality: float,
    attendance: float,
    breaks: float,
    error_free: float,
    policy: CompanyPolicySettings,
) -> float:
    weights = (
        policy.punctuality_weight,
        policy.attendance_weight,
        policy.break_adherence_weight,
        policy.error_free_weight,
    )
    total = sum(weights)
    weighted = (
        punctuality * weights[0]
        + attendance * weights[1]
        + breaks * weights[2]
        + error_free * weights[3]
    )
    return round(weighted / total, 2)


def recompute_metrics(
    session: ScheduleSession,
    policy: CompanyPolicySettings,
    now: Optional[datetime] = None,
) -> SessionMetrics:
    """
    Derive every metric of a session without mutating it.

    Args:
        session: Session snapshot
        policy: Company policy (threshold, penalties, weights)
        now: Reference instant for sessions still clocked in (default: current UTC time)

    Returns:
        SessionMetrics
    """
    now = ensure_utc(now) if now is not None else now_utc()
    if session.is_terminal and session.clock_out_time is None:
        # closed without a clock-out (archived, no-show): the span ends when it closed
        now = min(now, ensure_utc(session.updated_at))
    totals = durations_for_session(session, now, policy.overtime_threshold_minutes)
    scheduled = minutes_between(session.scheduled_start, session.scheduled_end)

    punctuality = punctuality_score(session, policy)
    attendance = attendance_rate(totals.worked_minutes, scheduled)
    breaks = break_adherence(session, totals.worked_minutes, policy)
    error_free = error_free_score(session)

    return SessionMetrics(
        scheduled_minutes=scheduled,
        worked_minutes=totals.worked_minutes,
        break_minutes=totals.break_minutes,
        overtime_minutes=totals.overtime_minutes,
        punctuality_score=punctuality,
        attendance_rate=attendance,
        break_adherence=breaks,
        compliance_score=compliance_score(punctuality, attendance, breaks, error_free, policy),
        health_status=health_status(session),
    )


def apply_metrics(session: ScheduleSession, metrics: SessionMetrics) -> None:
    """Copy derived metrics onto a session draft (used inside transitions only)."""
    session.total_scheduled_minutes = metrics.scheduled_minutes
    session.total_worked_minutes = metrics.worked_minutes
    session.total_break_minutes = metrics.break_minutes
    session.total_overtime_minutes = metrics.overtime_minutes
    session.punctuality_score = metrics.punctuality_score
    session.attendance_rate = metrics.attendance_rate
    session.compliance_score = metrics.compliance_score
    session.health_status = metrics.health_status
