"""
Duration accounting for schedule sessions.

Worked, break and overtime minutes are always derived from the clock span and
the break periods (or, equivalently, from the event log) and never kept as a
running counter. Arithmetic is done in seconds and floored to whole minutes
once at the end, so worked + break never exceeds the elapsed span.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from app.schemas.schedule_session import BreakPeriod, ScheduleSession
from app.utils.datetime_utils import ensure_utc, floor_minutes, now_utc


@dataclass(frozen=True)
class DurationTotals:
    worked_seconds: int
    break_seconds: int
    elapsed_seconds: int
    worked_minutes: int
    break_minutes: int
    elapsed_minutes: int
    overtime_minutes: int = 0


_ZERO = DurationTotals(0, 0, 0, 0, 0, 0, 0)

Interval = Tuple[datetime, Optional[datetime]]


def overtime_minutes(worked_minutes: int, threshold_minutes: int) -> int:
    return max(0, worked_minutes - threshold_minutes)


def _break_seconds(intervals: Iterable[Interval], span_start: datetime, span_end: datetime) -> int:
    total = 0.0
    for start, end in intervals:
        start = max(ensure_utc(start), span_start)
        end = min(ensure_utc(end) if end is not None else span_end, span_end)
        if end > start:
            total += (end - start).total_seconds()
    return int(total)


def compute_durations(
    clock_in: Optional[datetime],
    clock_out: Optional[datetime],
    break_periods: Sequence[BreakPeriod],
    now: datetime,
    overtime_threshold_minutes: Optional[int] = None,
) -> DurationTotals:
    """
    Compute worked/break minutes for a clock span.

    Args:
        clock_in: Effective clock-in instant (None means never clocked in)
        clock_out: Effective clock-out instant, or None while still clocked in
        break_periods: Break periods; an open one runs up to the span end
        now: Reference instant used as the span end while clocked in
        overtime_threshold_minutes: If given, overtime_minutes is filled in

    Returns:
        DurationTotals
    """
    return _compute(
        clock_in,
        clock_out,
        [(b.start_time, b.end_time) for b in break_periods],
        now,
        overtime_threshold_minutes,
    )


def _compute(
    clock_in: Optional[datetime],
    clock_out: Optional[datetime],
    breaks: List[Interval],
    now: datetime,
    overtime_threshold_minutes: Optional[int],
) -> DurationTotals:
    if clock_in is None:
        return _ZERO
    span_start = ensure_utc(clock_in)
    span_end = ensure_utc(clock_out) if clock_out is not None else ensure_utc(now)
    if span_end <= span_start:
        return _ZERO

    elapsed = int((span_end - span_start).total_seconds())
    brk = min(_break_seconds(breaks, span_start, span_end), elapsed)
    worked = elapsed - brk
    worked_minutes = floor_minutes(worked)
    return DurationTotals(
        worked_seconds=worked,
        break_seconds=brk,
        elapsed_seconds=elapsed,
        worked_minutes=worked_minutes,
        break_minutes=floor_minutes(brk),
        elapsed_minutes=floor_minutes(elapsed),
        overtime_minutes=(
            overtime_minutes(worked_minutes, overtime_threshold_minutes)
            if overtime_threshold_minutes is not None else 0
        ),
    )


def durations_for_session(
    session: ScheduleSession,
    now: Optional[datetime] = None,
    overtime_threshold_minutes: Optional[int] = None,
) -> DurationTotals:
    """Durations from the session's clock fields and break periods."""
    now = now or now_utc()
    return compute_durations(
        session.clock_in_time,
        session.clock_out_time,
        session.break_periods,
        now,
        overtime_threshold_minutes,
    )


def _parse_instant(value) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))


def durations_from_event_log(
    session: ScheduleSession,
    now: Optional[datetime] = None,
    overtime_threshold_minutes: Optional[int] = None,
) -> DurationTotals:
    """
    Rebuild durations purely from the event log.

    Every clock or break change records its effective instants in the event
    metadata (clock_in_at, clock_out_at, breaks_opened, breaks_closed); this
    replays them in log order. The result must match durations_for_session.
    """
    now = now or now_utc()
    clock_in: Optional[datetime] = None
    clock_out: Optional[datetime] = None
    breaks: Dict[str, List[Optional[datetime]]] = {}
    order: List[str] = []

    for event in session.events:
        meta = event.metadata or {}
        if meta.get("clock_in_at"):
            clock_in = _parse_instant(meta["clock_in_at"])
            clock_out = None
        if meta.get("clock_out_at"):
            clock_out = _parse_instant(meta["clock_out_at"])
        for opened in meta.get("breaks_opened", []):
            breaks[opened["break_id"]] = [_parse_instant(opened["start_time"]), None]
            order.append(opened["break_id"])
        for closed in meta.get("breaks_closed", []):
            if closed["break_id"] in breaks:
                breaks[closed["break_id"]][1] = _parse_instant(closed["end_time"])

    intervals = [(breaks[b][0], breaks[b][1]) for b in order]
    return _compute(clock_in, clock_out, intervals, now, overtime_threshold_minutes)


def continuous_work_seconds(session: ScheduleSession, now: datetime) -> int:
    """Seconds worked since clock-in or the end of the last break, whichever is later."""
    if session.clock_in_time is None or session.open_break() is not None:
        return 0
    anchor = ensure_utc(session.clock_in_time)
    for period in session.break_periods:
        if period.end_time is not None and period.end_time > anchor:
            anchor = ensure_utc(period.end_time)
    end = ensure_utc(session.clock_out_time) if session.clock_out_time else ensure_utc(now)
    return max(0, int((end - anchor).total_seconds()))


def instant_worked_reached(
    clock_in: datetime,
    break_periods: Sequence[BreakPeriod],
    target_minutes: int,
    until: datetime,
) -> Optional[datetime]:
    """
    The instant at which worked time first reached target_minutes, walking the
    clock span and skipping breaks. None if it was not reached by ``until``.
    """
    cursor = ensure_utc(clock_in)
    until = ensure_utc(until)
    remaining = timedelta(minutes=target_minutes)

    for period in sorted(break_periods, key=lambda b: b.start_time):
        start = ensure_utc(period.start_time)
        if start > cursor:
            segment = start - cursor
            if remaining <= segment:
                break
            remaining -= segment
            cursor = start
        if period.end_time is None:
            return None
        cursor = max(cursor, ensure_utc(period.end_time))

    reached = cursor + remaining
    return reached if reached <= until else None
