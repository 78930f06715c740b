"""
Schedule session endpoints: open a session, read it, apply inputs, read metrics.
No auth here; callers pass actor ids in the input payloads.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_policy_cache
from app.schemas.schedule_session import (
    ScheduleSession,
    ScheduleSessionEvent,
    SessionCreateRequest,
    SessionEventResult,
    SessionMetrics,
    SessionStatus,
    SessionSummary,
)
from app.schemas.session_events import parse_session_input
from app.services.policy_service import PolicyCache
from app.services.session_service import (
    open_session_for_schedule,
    process_session_event,
    session_metrics,
)
from app.services.session_store import SessionStore

router = APIRouter()
_log = logging.getLogger(__name__)


@router.post("", response_model=ScheduleSession, status_code=status.HTTP_201_CREATED)
async def create_session_endpoint(
    request: SessionCreateRequest,
    db: Session = Depends(get_db),
    policy_cache: PolicyCache = Depends(get_policy_cache),
):
    """
    Open the session for one schedule occurrence

    409 if the occurrence already has a session.
    """
    return open_session_for_schedule(
        db,
        request.schedule_id,
        occurrence_start=request.occurrence_start,
        created_by=request.created_by,
        policy_cache=policy_cache,
    )


@router.get("", response_model=List[SessionSummary])
async def list_sessions_endpoint(
    employee_id: str = Query(..., description="Employee whose sessions to list"),
    session_status: Optional[List[SessionStatus]] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    """An employee's sessions ordered by occurrence start, optionally filtered by status"""
    sessions = SessionStore(db).list_for_employee(employee_id, statuses=session_status)
    return [SessionSummary(**s.model_dump()) for s in sessions]


@router.get("/{session_id}", response_model=ScheduleSession)
async def get_session_endpoint(session_id: str, db: Session = Depends(get_db)):
    return SessionStore(db).load(session_id)


@router.get("/{session_id}/events", response_model=List[ScheduleSessionEvent])
async def list_session_events_endpoint(session_id: str, db: Session = Depends(get_db)):
    """The session's append-only event trail, oldest first"""
    return SessionStore(db).load(session_id).events


@router.post("/{session_id}/events", response_model=SessionEventResult)
async def apply_session_event_endpoint(
    session_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    policy_cache: PolicyCache = Depends(get_policy_cache),
):
    """
    Apply one input to the session

    The body is one of the tagged input variants, selected by ``event_type``:
    location_sample, manual_action, time_tick, admin_override, anomaly_report.
    A duplicate event_id or a tick with nothing to do returns accepted=false.
    """
    event = parse_session_input(payload)
    store = SessionStore(db)
    before = store.load(session_id)
    after = process_session_event(db, session_id, event, policy_cache=policy_cache)
    appended = after.events[len(before.events):] if after.version != before.version else []
    return SessionEventResult(accepted=bool(appended), events=appended, session=after)


@router.get("/{session_id}/metrics", response_model=SessionMetrics)
async def get_session_metrics_endpoint(
    session_id: str,
    now: Optional[datetime] = Query(None, description="Reference instant (default: current time)"),
    db: Session = Depends(get_db),
):
    """Metrics recomputed from the stored facts as of ``now``"""
    return session_metrics(db, session_id, now)
