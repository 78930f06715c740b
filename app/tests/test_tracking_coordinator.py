"""
Tests for background tracking: start/stop, forwarding, offline reporting and reconciliation
"""
import threading
from datetime import timedelta

import pytest

from app.core.errors import ConflictError
from app.schemas.policy import ConsentSettings
from app.schemas.schedule_session import SessionErrorType, SessionStatus
from app.schemas.session_events import LocationFix, ManualAction, ManualActionKind
from app.services.tracking_coordinator import BufferedLocationSource, LocationUnavailable, TrackingCoordinator

SESSION_ID = "sched-1:20260302T090000Z"


class FakeGateway:
    """In-memory session storage applying inputs through the real state machine"""

    def __init__(self, machine, session):
        self.machine = machine
        self.session = session
        self.applied = []
        self.fail_next = None
        self.applied_signal = threading.Event()

    def load(self, session_id):
        return self.session

    def apply(self, session_id, event):
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        self.session = self.machine.apply_event(self.session, event).session
        self.applied.append(event)
        self.applied_signal.set()
        return self.session


class ScriptedSource:
    """Returns (or raises) the given readings in order"""

    def __init__(self, *readings):
        self.readings = list(readings)
        self.calls = 0

    def sample(self, employee_id):
        self.calls += 1
        reading = self.readings.pop(0)
        if isinstance(reading, Exception):
            raise reading
        return reading


def _consent(employee_id, permitted=True):
    return ConsentSettings(employee_id=employee_id, consent_given=permitted, auto_tracking_enabled=True)


@pytest.fixture
def fix(north_of_site, at):
    def _fix(hour, minute=0, meters=20):
        point = north_of_site(meters)
        return LocationFix(latitude=point.latitude, longitude=point.longitude,
                           accuracy_meters=5, timestamp=at(hour, minute))
    return _fix


@pytest.fixture
def gateway(machine, new_session):
    return FakeGateway(machine, new_session)


def _coordinator(source, gateway, clock=None, consent=_consent, **kwargs):
    kwargs.setdefault("sample_interval", 3600)
    if clock is not None:
        kwargs["clock"] = clock
    return TrackingCoordinator(source, gateway, consent, **kwargs)


def test_start_requires_consent(gateway):
    coordinator = _coordinator(ScriptedSource(), gateway, consent=lambda e: _consent(e, permitted=False))
    assert coordinator.start(SESSION_ID, "emp-1", run_thread=False) is False
    assert not coordinator.is_tracking(SESSION_ID)
    assert coordinator.sample_once(SESSION_ID) is None


def test_start_is_not_repeated(gateway):
    coordinator = _coordinator(ScriptedSource(), gateway)
    assert coordinator.start(SESSION_ID, "emp-1", run_thread=False) is True
    assert coordinator.start(SESSION_ID, "emp-1", run_thread=False) is False
    assert coordinator.is_tracking(SESSION_ID)


def test_sample_is_forwarded_as_location_sample(gateway, fix, at):
    coordinator = _coordinator(ScriptedSource(fix(8, 58)), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    session = coordinator.sample_once(SESSION_ID)
    assert session.status == SessionStatus.CLOCKED_IN
    assert session.clock_in_time == at(8, 58)
    assert gateway.applied[0].event_type == "location_sample"


def test_stop_takes_effect_immediately(gateway, fix):
    source = ScriptedSource(fix(8, 58))
    coordinator = _coordinator(source, gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    assert coordinator.stop(SESSION_ID) is True
    assert coordinator.stop(SESSION_ID) is False
    assert coordinator.sample_once(SESSION_ID) is None
    assert source.calls == 0
    assert gateway.applied == []


def test_sample_taken_while_stopping_is_discarded(gateway, fix):
    coordinator = None

    class StoppingSource:
        def sample(self, employee_id):
            coordinator.stop(SESSION_ID)
            return fix(8, 58)

    coordinator = _coordinator(StoppingSource(), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)
    assert coordinator.sample_once(SESSION_ID) is None
    assert gateway.applied == []


def test_revoke_consent_stops_only_that_employee(gateway):
    coordinator = _coordinator(ScriptedSource(), gateway)
    coordinator.start("a", "emp-1", run_thread=False)
    coordinator.start("b", "emp-1", run_thread=False)
    coordinator.start("c", "emp-2", run_thread=False)

    assert coordinator.revoke_consent("emp-1") == 2
    assert not coordinator.is_tracking("a")
    assert not coordinator.is_tracking("b")
    assert coordinator.is_tracking("c")


def test_device_offline_reported_once_per_outage(gateway, fix, at):
    times = iter([at(8, 50), at(9, 30)])
    source = ScriptedSource(
        LocationUnavailable("GPS off"),
        LocationUnavailable("GPS off"),
        fix(8, 58),
        LocationUnavailable("GPS off"),
    )
    coordinator = _coordinator(source, gateway, clock=lambda: next(times))
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    session = coordinator.sample_once(SESSION_ID)
    offline = [e for e in session.errors if e.error_type == SessionErrorType.DEVICE_OFFLINE]
    assert len(offline) == 1
    assert offline[0].timestamp == at(8, 50)

    # still offline: nothing new
    assert coordinator.sample_once(SESSION_ID) is None

    assert coordinator.sample_once(SESSION_ID).status == SessionStatus.CLOCKED_IN

    session = coordinator.sample_once(SESSION_ID)
    offline = [e for e in session.errors if e.error_type == SessionErrorType.DEVICE_OFFLINE]
    assert len(offline) == 2


def test_repeated_fix_is_not_forwarded_twice(gateway, fix):
    same = fix(8, 58)
    coordinator = _coordinator(ScriptedSource(same, same), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    assert coordinator.sample_once(SESSION_ID) is not None
    assert coordinator.sample_once(SESSION_ID) is None
    assert len(gateway.applied) == 1


def test_stale_save_queues_sample_until_sync(gateway, fix, at):
    coordinator = _coordinator(ScriptedSource(fix(8, 58), fix(8, 59)), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    gateway.fail_next = ConflictError("Session was modified concurrently", code=ConflictError.STALE_SNAPSHOT)
    assert coordinator.sample_once(SESSION_ID) is None
    assert coordinator.pending_count(SESSION_ID) == 1

    # queued behind the first so order is kept
    assert coordinator.sample_once(SESSION_ID) is None
    assert coordinator.pending_count(SESSION_ID) == 2
    assert gateway.applied == []

    session = coordinator.sync_once(SESSION_ID)
    assert coordinator.pending_count(SESSION_ID) == 0
    assert [e.timestamp for e in gateway.applied] == [at(8, 58), at(8, 59)]
    assert session.clock_in_time == at(8, 58)


def test_out_of_order_sample_is_dropped(gateway, fix):
    coordinator = _coordinator(ScriptedSource(fix(8, 58)), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    gateway.fail_next = ConflictError("Input is older than the last event", code=ConflictError.OUT_OF_ORDER)
    assert coordinator.sample_once(SESSION_ID) is None
    assert coordinator.pending_count(SESSION_ID) == 0


def test_sync_stops_tracking_of_closed_session(gateway, machine, north_of_site, at):
    coordinator = _coordinator(ScriptedSource(), gateway)
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)
    for event in (
        ManualAction(event_id="in", timestamp=at(9), action=ManualActionKind.CLOCK_IN,
                     actor_id="emp-1", position=north_of_site(10), accuracy=5),
        ManualAction(event_id="out", timestamp=at(17), action=ManualActionKind.CLOCK_OUT, actor_id="emp-1"),
    ):
        gateway.apply(SESSION_ID, event)

    session = coordinator.sync_once(SESSION_ID)
    assert session.status == SessionStatus.COMPLETED
    assert not coordinator.is_tracking(SESSION_ID)


def test_sync_stops_tracking_when_stored_consent_withdrawn(gateway, fix):
    granted = {"emp-1": True}
    coordinator = _coordinator(ScriptedSource(fix(8, 58)), gateway,
                               consent=lambda e: _consent(e, permitted=granted[e]))
    coordinator.start(SESSION_ID, "emp-1", run_thread=False)

    # revoked by another writer, not through revoke_consent
    granted["emp-1"] = False
    assert coordinator.sync_once(SESSION_ID) is None
    assert not coordinator.is_tracking(SESSION_ID)
    assert coordinator.sample_once(SESSION_ID) is None
    assert gateway.applied == []


def test_buffered_source_returns_latest_fresh_fix(fix, at):
    now = {"value": at(9, 2)}
    buffer = BufferedLocationSource(max_age_seconds=300, clock=lambda: now["value"])

    with pytest.raises(LocationUnavailable):
        buffer.sample("emp-1")

    buffer.push("emp-1", fix(9, 0))
    buffer.push("emp-1", fix(8, 55))
    assert buffer.sample("emp-1").timestamp == at(9, 0)

    now["value"] = at(9, 0) + timedelta(seconds=301)
    with pytest.raises(LocationUnavailable):
        buffer.sample("emp-1")

    buffer.push("emp-1", fix(9, 5))
    assert buffer.sample("emp-1").timestamp == at(9, 5)


def test_background_thread_samples_until_stopped(gateway, at, north_of_site):
    point = north_of_site(20)
    counter = {"n": 0}

    class MovingClockSource:
        def sample(self, employee_id):
            counter["n"] += 1
            return LocationFix(latitude=point.latitude, longitude=point.longitude, accuracy_meters=5,
                               timestamp=at(8, 58) + timedelta(seconds=counter["n"]))

    coordinator = _coordinator(MovingClockSource(), gateway, sample_interval=0.01, sync_interval=0.05)
    coordinator.start(SESSION_ID, "emp-1")
    thread = coordinator._current(SESSION_ID).thread

    assert gateway.applied_signal.wait(timeout=5)
    coordinator.stop_all()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert gateway.session.clocked_in is True
