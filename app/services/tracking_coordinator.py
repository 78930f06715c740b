"""
TrackingCoordinator: background location sampling for active sessions.

One daemon thread per tracked session samples its LocationSource every
``sample_interval`` seconds and forwards each fix to the session as a
LocationSample. Every ``sync_interval`` seconds it reloads the stored session
and replays inputs that could not be saved earlier. Tracking starts and stops
only through explicit calls; stop and consent revocation take effect at once.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Optional, Protocol

from app.core.errors import ConflictError, EngineError
from app.schemas.policy import ConsentSettings
from app.schemas.schedule_session import ErrorSeverity, ScheduleSession, SessionErrorType
from app.schemas.session_events import AnomalyReport, LocationFix, LocationSample
from app.utils.datetime_utils import now_utc

_log = logging.getLogger(__name__)


class LocationUnavailable(Exception):
    """The device could not produce a location fix"""


class LocationSource(Protocol):
    def sample(self, employee_id: str) -> LocationFix:
        ...


class SessionGateway(Protocol):
    def load(self, session_id: str) -> ScheduleSession:
        ...

    def apply(self, session_id: str, event) -> ScheduleSession:
        ...


class BufferedLocationSource:
    """
    LocationSource fed by device uploads. sample() returns the latest pushed
    fix per employee until it is older than ``max_age_seconds``.
    """

    def __init__(self, max_age_seconds: float = 300.0, clock: Callable[[], datetime] = now_utc) -> None:
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._latest: Dict[str, LocationFix] = {}
        self._lock = threading.Lock()

    def push(self, employee_id: str, fix: LocationFix) -> None:
        with self._lock:
            current = self._latest.get(employee_id)
            if current is None or fix.timestamp >= current.timestamp:
                self._latest[employee_id] = fix

    def sample(self, employee_id: str) -> LocationFix:
        with self._lock:
            fix = self._latest.get(employee_id)
        if fix is None:
            raise LocationUnavailable(f"No location fix available for employee {employee_id}")
        age = (self._clock() - fix.timestamp).total_seconds()
        if age > self.max_age_seconds:
            raise LocationUnavailable(f"Last location fix for employee {employee_id} is {age:.0f}s old")
        return fix


@dataclass
class _Tracker:
    session_id: str
    employee_id: str
    source: LocationSource
    generation: int
    cancel: threading.Event = field(default_factory=threading.Event)
    pending: Deque[LocationSample] = field(default_factory=deque)
    last_forwarded_at: Optional[datetime] = None
    offline: bool = False
    thread: Optional[threading.Thread] = None


class TrackingCoordinator:
    """
    Start/stop background tracking per session.

    Args:
        location_source: Default LocationSource
        gateway: Session access (load/apply) usable from worker threads
        consent_reader: employee_id -> ConsentSettings
        sample_interval: Seconds between samples
        sync_interval: Seconds between reconciliation passes
    """

    def __init__(
        self,
        location_source: LocationSource,
        gateway: SessionGateway,
        consent_reader: Callable[[str], ConsentSettings],
        sample_interval: float = 30.0,
        sync_interval: float = 60.0,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.location_source = location_source
        self.gateway = gateway
        self.consent_reader = consent_reader
        self.sample_interval = sample_interval
        self.sync_interval = sync_interval
        self._clock = clock
        self._trackers: Dict[str, _Tracker] = {}
        self._generation = 0
        self._lock = threading.Lock()

    # ---------------------------------------------------------------- control

    def start(
        self,
        session_id: str,
        employee_id: str,
        location_source: Optional[LocationSource] = None,
        run_thread: bool = True,
    ) -> bool:
        """
        Begin tracking a session.

        Returns:
            False if the employee has not consented or the session is already tracked
        """
        consent = self.consent_reader(employee_id)
        if not consent.tracking_permitted:
            _log.info("Tracking for session %s refused: employee %s has not consented", session_id, employee_id)
            return False

        with self._lock:
            if session_id in self._trackers:
                return False
            self._generation += 1
            tracker = _Tracker(
                session_id=session_id,
                employee_id=employee_id,
                source=location_source or self.location_source,
                generation=self._generation,
            )
            self._trackers[session_id] = tracker

        if run_thread:
            tracker.thread = threading.Thread(
                target=self._run,
                args=(tracker,),
                name=f"tracking-{session_id}",
                daemon=True,
            )
            tracker.thread.start()
        _log.info("Tracking started for session %s", session_id)
        return True

    def stop(self, session_id: str) -> bool:
        with self._lock:
            tracker = self._trackers.pop(session_id, None)
        if tracker is None:
            return False
        tracker.cancel.set()
        if tracker.pending:
            _log.warning("Tracking stopped for session %s with %s unsynced samples dropped",
                         session_id, len(tracker.pending))
        _log.info("Tracking stopped for session %s", session_id)
        return True

    def revoke_consent(self, employee_id: str) -> int:
        """Stop every session tracked for the employee; returns how many were stopped."""
        with self._lock:
            session_ids = [t.session_id for t in self._trackers.values() if t.employee_id == employee_id]
        return sum(1 for session_id in session_ids if self.stop(session_id))

    def stop_all(self) -> None:
        with self._lock:
            session_ids = list(self._trackers)
        for session_id in session_ids:
            self.stop(session_id)

    def is_tracking(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._trackers

    def pending_count(self, session_id: str) -> int:
        tracker = self._current(session_id)
        return len(tracker.pending) if tracker else 0

    # ------------------------------------------------------------------ steps

    def _current(self, session_id: str) -> Optional[_Tracker]:
        with self._lock:
            return self._trackers.get(session_id)

    def _still_active(self, tracker: _Tracker) -> bool:
        current = self._current(tracker.session_id)
        return current is not None and current.generation == tracker.generation and not tracker.cancel.is_set()

    def sample_once(self, session_id: str) -> Optional[ScheduleSession]:
        """
        Take one sample and forward it.

        Returns:
            The stored session after the forward, or None when nothing was applied
        """
        tracker = self._current(session_id)
        if tracker is None:
            return None

        try:
            fix = tracker.source.sample(tracker.employee_id)
        except Exception as exc:
            if not self._still_active(tracker):
                return None
            if tracker.offline:
                return None
            tracker.offline = True
            return self._report_source_failure(tracker, exc)
        tracker.offline = False

        # stop or revoke may have happened while the source was blocking
        if not self._still_active(tracker):
            _log.debug("Discarding sample for session %s: tracking stopped", session_id)
            return None
        if tracker.last_forwarded_at is not None and fix.timestamp <= tracker.last_forwarded_at:
            _log.debug("Discarding stale sample for session %s", session_id)
            return None
        sample = fix.to_sample()
        tracker.last_forwarded_at = fix.timestamp
        return self._forward(tracker, sample)

    def sync_once(self, session_id: str) -> Optional[ScheduleSession]:
        """
        Reload the stored session and replay queued samples in order.

        Consent is read again on every pass, so a revocation stored by another
        process also ends tracking here.

        Returns:
            The reloaded (or last replayed) session, None if not tracked
        """
        tracker = self._current(session_id)
        if tracker is None:
            return None
        if not self.consent_reader(tracker.employee_id).tracking_permitted:
            _log.info("Consent withdrawn for employee %s; tracking of session %s ends",
                      tracker.employee_id, session_id)
            self.stop(session_id)
            return None
        session = self.gateway.load(session_id)
        if session.is_terminal:
            _log.info("Session %s closed; tracking ends", session_id)
            self.stop(session_id)
            return session

        while tracker.pending and self._still_active(tracker):
            sample = tracker.pending[0]
            try:
                session = self.gateway.apply(session_id, sample)
            except ConflictError as exc:
                if exc.code == ConflictError.STALE_SNAPSHOT:
                    break
                _log.info("Dropping queued sample %s for session %s: %s", sample.event_id, session_id, exc.message)
            except EngineError as exc:
                _log.info("Dropping queued sample %s for session %s: %s", sample.event_id, session_id, exc.message)
            tracker.pending.popleft()
        return session

    def _forward(self, tracker: _Tracker, sample: LocationSample) -> Optional[ScheduleSession]:
        if tracker.pending:
            # keep order behind samples still waiting for reconciliation
            tracker.pending.append(sample)
            return None
        try:
            return self.gateway.apply(tracker.session_id, sample)
        except ConflictError as exc:
            if exc.code == ConflictError.STALE_SNAPSHOT:
                tracker.pending.append(sample)
                _log.info("Sample for session %s queued until next sync", tracker.session_id)
            else:
                _log.info("Sample for session %s dropped: %s", tracker.session_id, exc.message)
            return None
        except EngineError as exc:
            _log.info("Sample for session %s rejected: %s", tracker.session_id, exc.message)
            return None

    def _report_source_failure(self, tracker: _Tracker, exc: Exception) -> Optional[ScheduleSession]:
        now = self._clock()
        _log.warning("Location source failed for session %s: %s", tracker.session_id, exc)
        report = AnomalyReport(
            event_id=f"offline:{tracker.session_id}:{now.isoformat()}",
            timestamp=now,
            error_type=SessionErrorType.DEVICE_OFFLINE,
            message=f"Location unavailable: {exc}",
            severity=ErrorSeverity.WARNING,
            details={"employee_id": tracker.employee_id},
        )
        try:
            return self.gateway.apply(tracker.session_id, report)
        except EngineError as err:
            _log.info("Could not record device_offline on session %s: %s", tracker.session_id, err.message)
            return None

    # ----------------------------------------------------------------- thread

    def _run(self, tracker: _Tracker) -> None:
        next_sync = self.sync_interval
        elapsed = 0.0
        while not tracker.cancel.wait(self.sample_interval):
            elapsed += self.sample_interval
            try:
                self.sample_once(tracker.session_id)
                if elapsed >= next_sync:
                    next_sync = elapsed + self.sync_interval
                    self.sync_once(tracker.session_id)
            except Exception:
                _log.error("Tracking loop error for session %s", tracker.session_id, exc_info=True)
        _log.debug("Tracking thread for session %s exiting", tracker.session_id)
