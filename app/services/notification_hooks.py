"""
In-process domain-event hooks.

Delivery (push, email, SMS) belongs to subscribers; this module only fans out
named hooks. A failing subscriber is logged and never affects the transition
that produced the event.
"""
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Sequence

from app.schemas.schedule import ScheduleConflict
from app.schemas.schedule_session import (
    ScheduleSession,
    ScheduleSessionEvent,
    SessionEventType,
    SessionStatus,
)

_log = logging.getLogger(__name__)

SESSION_STARTED = "session_started"
AUTO_CLOCK_IN = "auto_clock_in"
BREAK_STARTED = "break_started"
BREAK_ENDED = "break_ended"
OVERTIME_ENTERED = "overtime_entered"
NO_SHOW_DECLARED = "no_show_declared"
CONFLICT_DETECTED = "conflict_detected"
AUTO_CLOCK_OUT = "auto_clock_out"
SESSION_COMPLETED = "session_completed"
SESSION_ERROR = "session_error"

HOOK_NAMES = frozenset({
    SESSION_STARTED,
    AUTO_CLOCK_IN,
    BREAK_STARTED,
    BREAK_ENDED,
    OVERTIME_ENTERED,
    NO_SHOW_DECLARED,
    CONFLICT_DETECTED,
    AUTO_CLOCK_OUT,
    SESSION_COMPLETED,
    SESSION_ERROR,
})

_EVENT_HOOKS = {
    SessionEventType.MONITORING_STARTED: SESSION_STARTED,
    SessionEventType.AUTO_CLOCK_IN: AUTO_CLOCK_IN,
    SessionEventType.BREAK_STARTED: BREAK_STARTED,
    SessionEventType.BREAK_ENDED: BREAK_ENDED,
    SessionEventType.OVERTIME_STARTED: OVERTIME_ENTERED,
    SessionEventType.NO_SHOW: NO_SHOW_DECLARED,
    SessionEventType.AUTO_CLOCK_OUT: AUTO_CLOCK_OUT,
    SessionEventType.ERROR_OCCURRED: SESSION_ERROR,
}

Handler = Callable[[Dict[str, Any]], None]

_subscribers: Dict[str, List[Handler]] = defaultdict(list)
_lock = threading.Lock()


def subscribe(name: str, handler: Handler) -> None:
    if name not in HOOK_NAMES:
        raise ValueError(f"Unknown hook {name!r}")
    with _lock:
        _subscribers[name].append(handler)


def unsubscribe(name: str, handler: Handler) -> None:
    with _lock:
        handlers = _subscribers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)


def clear_subscribers() -> None:
    with _lock:
        _subscribers.clear()


def publish(name: str, payload: Dict[str, Any]) -> int:
    """Call every subscriber of ``name``; returns how many succeeded."""
    with _lock:
        handlers = list(_subscribers.get(name, []))
    delivered = 0
    for handler in handlers:
        try:
            handler(payload)
            delivered += 1
        except Exception:
            _log.error("Hook %s handler %r failed", name, handler, exc_info=True)
    return delivered


def _session_payload(session: ScheduleSession, event: ScheduleSessionEvent) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "schedule_id": session.schedule_id,
        "employee_id": session.employee_id,
        "company_id": session.company_id,
        "status": session.status.value,
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "timestamp": event.timestamp.isoformat(),
        "triggered_by": event.triggered_by.value,
        "details": event.details,
        "metadata": event.metadata,
    }


def publish_domain_events(session: ScheduleSession, events: Sequence[ScheduleSessionEvent]) -> None:
    """Publish the hooks matching events a committed transition appended."""
    for event in events:
        payload = _session_payload(session, event)
        name = _EVENT_HOOKS.get(event.event_type)
        if name is not None:
            publish(name, payload)
        completed = session.status == SessionStatus.COMPLETED and event.event_type in (
            SessionEventType.AUTO_CLOCK_OUT,
            SessionEventType.MANUAL_CLOCK_OUT,
        )
        if completed:
            publish(SESSION_COMPLETED, payload)


def publish_conflict(conflict: ScheduleConflict) -> None:
    publish(CONFLICT_DETECTED, conflict.model_dump(mode="json"))
