"""
Tracking coordinator control and device location upload
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_location_buffer, get_tracking_coordinator
from app.core.errors import PreconditionError
from app.schemas.session_events import LocationFix
from app.services.session_store import SessionStore
from app.services.tracking_coordinator import BufferedLocationSource, TrackingCoordinator

router = APIRouter()
_log = logging.getLogger(__name__)


@router.post("/{session_id}/start")
async def start_tracking_endpoint(
    session_id: str,
    db: Session = Depends(get_db),
    coordinator: TrackingCoordinator = Depends(get_tracking_coordinator),
):
    """
    Start background tracking for a session

    Refused (400 consent_required) unless the employee has consented.
    """
    session = SessionStore(db).load(session_id)
    if session.is_terminal:
        raise PreconditionError("Session is already closed", code="session_closed")
    if coordinator.is_tracking(session_id):
        return {"session_id": session_id, "tracking": True}
    if not coordinator.start(session_id, session.employee_id):
        raise PreconditionError(
            "Employee has not consented to background tracking",
            code="consent_required",
            context={"employee_id": session.employee_id},
        )
    return {"session_id": session_id, "tracking": True}


@router.post("/{session_id}/stop")
async def stop_tracking_endpoint(
    session_id: str,
    coordinator: TrackingCoordinator = Depends(get_tracking_coordinator),
):
    stopped = coordinator.stop(session_id)
    return {"session_id": session_id, "tracking": False, "was_tracking": stopped}


@router.post("/{session_id}/location")
async def upload_location_endpoint(
    session_id: str,
    fix: LocationFix,
    db: Session = Depends(get_db),
    coordinator: TrackingCoordinator = Depends(get_tracking_coordinator),
    buffer: BufferedLocationSource = Depends(get_location_buffer),
):
    """
    Device location upload for a session

    The fix is buffered; the coordinator forwards it on its next sample.
    """
    session = SessionStore(db).load(session_id)
    buffer.push(session.employee_id, fix)
    return {
        "session_id": session_id,
        "buffered": True,
        "tracking": coordinator.is_tracking(session_id),
        "pending": coordinator.pending_count(session_id),
    }
