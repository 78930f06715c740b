"""
Dependencies for FastAPI endpoints
"""
import threading
from typing import Generator, Optional

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.policy_service import PolicyCache
from app.services.session_service import DatabaseSessionGateway
from app.services.tracking_coordinator import BufferedLocationSource, TrackingCoordinator


def get_db() -> Generator:
    """Dependency for getting database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_policy_cache = PolicyCache(ttl_seconds=settings.POLICY_CACHE_TTL_SECONDS)
_location_buffer = BufferedLocationSource()
_coordinator: Optional[TrackingCoordinator] = None
_coordinator_lock = threading.Lock()


def get_policy_cache() -> PolicyCache:
    return _policy_cache


def get_location_buffer() -> BufferedLocationSource:
    """Device uploads land here; the coordinator samples from it."""
    return _location_buffer


def get_tracking_coordinator() -> TrackingCoordinator:
    """Process-wide TrackingCoordinator, created on first use"""
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            gateway = DatabaseSessionGateway(SessionLocal, policy_cache=_policy_cache)
            _coordinator = TrackingCoordinator(
                location_source=_location_buffer,
                gateway=gateway,
                consent_reader=gateway.consent,
                sample_interval=settings.LOCATION_SAMPLE_INTERVAL_SECONDS,
                sync_interval=settings.SESSION_SYNC_INTERVAL_SECONDS,
            )
        return _coordinator


def shutdown_tracking() -> None:
    with _coordinator_lock:
        coordinator = _coordinator
    if coordinator is not None:
        coordinator.stop_all()
