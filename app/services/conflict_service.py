"""
Schedule conflict detection across an employee's assignment set.

Runs over the full visible schedule set, independently of any session.
Pairwise O(n^2) per employee; sets are bounded by the lookahead window.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from app.core.errors import MalformedInputError
from app.schemas.policy import CompanyPolicySettings
from app.schemas.schedule import (
    ConflictSeverity,
    ConflictType,
    Schedule,
    ScheduleConflict,
)
from app.utils.datetime_utils import ensure_utc, to_local

_log = logging.getLogger(__name__)


def _validate(schedules: Iterable[Schedule]) -> None:
    for schedule in schedules:
        if schedule.end_time <= schedule.start_time:
            raise MalformedInputError(
                f"Schedule {schedule.schedule_id} ends before it starts",
                context={
                    "schedule_id": schedule.schedule_id,
                    "start_time": schedule.start_time.isoformat(),
                    "end_time": schedule.end_time.isoformat(),
                },
            )


def _pair_id(conflict_type: ConflictType, a: Schedule, b: Schedule) -> str:
    keys = sorted([a.conflict_key, b.conflict_key])
    return f"{conflict_type.value}:{keys[0]}|{keys[1]}"


def _pair_ids(a: Schedule, b: Schedule) -> List[str]:
    return sorted([a.schedule_id, b.schedule_id])


def _overlap_minutes(a: Schedule, b: Schedule) -> int:
    start = max(a.start_time, b.start_time)
    end = min(a.end_time, b.end_time)
    return int((end - start).total_seconds() // 60)


def overlaps(a: Schedule, b: Schedule) -> bool:
    """Half-open [start, end) intersection."""
    return a.start_time < b.end_time and b.start_time < a.end_time


def _overlap_conflicts(employee_id: str, items: Sequence[Schedule]) -> List[ScheduleConflict]:
    conflicts = []
    for i, a in enumerate(items):
        for b in items[i + 1:]:
            if b.start_time >= a.end_time:
                # sorted by start: nothing later can overlap a
                break
            if a.is_cancelled and b.is_cancelled:
                continue
            if not overlaps(a, b):
                continue
            minutes = _overlap_minutes(a, b)
            conflicts.append(ScheduleConflict(
                conflict_id=_pair_id(ConflictType.OVERLAP, a, b),
                conflict_type=ConflictType.OVERLAP,
                severity=ConflictSeverity.ERROR,
                employee_id=employee_id,
                schedule_ids=_pair_ids(a, b),
                message=f"Schedules overlap by {minutes} minutes",
                overlap_minutes=minutes,
                suggestions=[
                    "Adjust one schedule so the shifts no longer overlap",
                    "Assign one of the shifts to another employee",
                ],
            ))
    return conflicts


def _rest_conflicts(
    employee_id: str,
    items: Sequence[Schedule],
    policy: CompanyPolicySettings,
) -> List[ScheduleConflict]:
    conflicts = []
    if policy.minimum_rest_minutes <= 0:
        return conflicts
    for prev, nxt in zip(items, items[1:]):
        if overlaps(prev, nxt):
            continue
        gap = int((nxt.start_time - prev.end_time).total_seconds() // 60)
        if gap < policy.minimum_rest_minutes:
            conflicts.append(ScheduleConflict(
                conflict_id=_pair_id(ConflictType.INSUFFICIENT_REST, prev, nxt),
                conflict_type=ConflictType.INSUFFICIENT_REST,
                severity=ConflictSeverity.WARNING,
                employee_id=employee_id,
                schedule_ids=_pair_ids(prev, nxt),
                message=(
                    f"Only {gap} minutes of rest between shifts "
                    f"(minimum {policy.minimum_rest_minutes})"
                ),
                suggestions=["Move the later shift to allow the minimum rest period"],
            ))
    return conflicts


def _hours_conflicts(
    employee_id: str,
    items: Sequence[Schedule],
    policy: CompanyPolicySettings,
) -> List[ScheduleConflict]:
    daily: Dict[str, List[Schedule]] = defaultdict(list)
    weekly: Dict[str, List[Schedule]] = defaultdict(list)
    for schedule in items:
        local_start = to_local(schedule.start_time, schedule.time_zone)
        daily[local_start.date().isoformat()].append(schedule)
        iso_year, iso_week, _ = local_start.isocalendar()
        weekly[f"{iso_year}-W{iso_week:02d}"].append(schedule)

    conflicts = []
    for day in sorted(daily):
        hours = sum(s.duration_minutes for s in daily[day]) / 60
        if hours > policy.max_daily_hours:
            conflicts.append(ScheduleConflict(
                conflict_id=f"{ConflictType.DAILY_HOURS_LIMIT.value}:{employee_id}:{day}",
                conflict_type=ConflictType.DAILY_HOURS_LIMIT,
                severity=ConflictSeverity.WARNING,
                employee_id=employee_id,
                schedule_ids=sorted(s.schedule_id for s in daily[day]),
                message=f"{hours:.1f} hours scheduled on {day} (limit {policy.max_daily_hours:g})",
                suggestions=["Reduce the shifts scheduled on this day"],
            ))
    for week in sorted(weekly):
        hours = sum(s.duration_minutes for s in weekly[week]) / 60
        if hours > policy.max_weekly_hours:
            conflicts.append(ScheduleConflict(
                conflict_id=f"{ConflictType.WEEKLY_HOURS_LIMIT.value}:{employee_id}:{week}",
                conflict_type=ConflictType.WEEKLY_HOURS_LIMIT,
                severity=ConflictSeverity.WARNING,
                employee_id=employee_id,
                schedule_ids=sorted(s.schedule_id for s in weekly[week]),
                message=f"{hours:.1f} hours scheduled in week {week} (limit {policy.max_weekly_hours:g})",
                suggestions=["Spread the shifts across more employees or weeks"],
            ))
    return conflicts


def detect_conflicts(
    schedules: Sequence[Schedule],
    policy: Optional[CompanyPolicySettings] = None,
) -> List[ScheduleConflict]:
    """
    Find overlapping or policy-violating schedules.

    - overlap (error): one per pair of overlapping schedules that are not both cancelled
    - insufficient_rest (warning): consecutive shifts closer than the minimum rest
    - daily_hours_limit / weekly_hours_limit (warning): scheduled hours above the policy limit

    The result does not depend on input order.

    Raises:
        MalformedInputError: If any schedule ends at or before its start
    """
    policy = policy or CompanyPolicySettings()
    _validate(schedules)

    by_employee: Dict[str, List[Schedule]] = defaultdict(list)
    for schedule in schedules:
        by_employee[schedule.employee_id].append(schedule)

    conflicts: List[ScheduleConflict] = []
    for employee_id in sorted(by_employee):
        items = sorted(by_employee[employee_id], key=lambda s: (s.start_time, s.end_time, s.conflict_key))
        active = [s for s in items if not s.is_cancelled]
        conflicts.extend(_overlap_conflicts(employee_id, items))
        conflicts.extend(_rest_conflicts(employee_id, active, policy))
        conflicts.extend(_hours_conflicts(employee_id, active, policy))

    if conflicts:
        _log.info("Detected %s schedule conflicts across %s employees", len(conflicts), len(by_employee))
    return sorted(conflicts, key=lambda c: c.conflict_id)


def validate_schedule(
    candidate: Schedule,
    existing: Sequence[Schedule],
    policy: Optional[CompanyPolicySettings] = None,
) -> List[ScheduleConflict]:
    """Conflicts the candidate would introduce into the employee's existing set."""
    same_employee = [
        s for s in existing
        if s.employee_id == candidate.employee_id and s.conflict_key != candidate.conflict_key
    ]
    conflicts = detect_conflicts(same_employee + [candidate], policy)
    return [c for c in conflicts if candidate.schedule_id in c.schedule_ids]


def can_move_schedule(
    schedule: Schedule,
    new_start: datetime,
    new_end: datetime,
    existing: Sequence[Schedule],
    policy: Optional[CompanyPolicySettings] = None,
) -> bool:
    """True if moving the schedule to [new_start, new_end) creates no error-severity conflict."""
    moved = schedule.model_copy(update={"start_time": ensure_utc(new_start), "end_time": ensure_utc(new_end)})
    conflicts = validate_schedule(moved, existing, policy)
    return not any(c.severity == ConflictSeverity.ERROR for c in conflicts)
