"""
Tests for location-driven session transitions
"""
import pytest

from app.core.errors import ConflictError, PreconditionError
from app.schemas.policy import CompanyPolicySettings, ConsentSettings
from app.schemas.schedule_session import (
    BreakType,
    ErrorSeverity,
    HealthStatus,
    SessionErrorType,
    SessionEventType,
    SessionStatus,
    TriggeredBy,
)
from app.schemas.session_events import LocationSample, ManualAction, ManualActionKind, TimeTick
from app.services.session_state_machine import SessionStateMachine


def _sample(event_id, ts, position, accuracy=10.0):
    return LocationSample(event_id=event_id, timestamp=ts, position=position, accuracy=accuracy)


def _clocked_in(machine, session, north_of_site, at):
    return machine.apply_event(session, _sample("arrive", at(8, 58), north_of_site(40))).session


def test_arrival_inside_monitoring_window_clocks_in(machine, new_session, north_of_site, at):
    """Sample 40 m from center at 08:58 with 10 m accuracy on a 100 m site"""
    result = machine.apply_event(new_session, _sample("s1", at(8, 58), north_of_site(40)))

    session = result.session
    assert result.accepted
    assert len(result.events) == 1
    event = result.events[0]
    assert event.event_type == SessionEventType.AUTO_CLOCK_IN
    assert event.triggered_by == TriggeredBy.GEOFENCE
    assert session.status == SessionStatus.CLOCKED_IN
    assert session.auto_clock_in_triggered is True
    assert session.clocked_in is True
    assert session.clock_in_time == at(8, 58)
    assert session.employee_present is True
    assert session.arrival_time == at(8, 58)
    assert len(session.events) == len(new_session.events) + 1
    # input snapshot untouched
    assert new_session.status == SessionStatus.SCHEDULED
    assert new_session.clocked_in is False


def test_replaying_same_sample_is_a_no_op(machine, new_session, north_of_site, at):
    sample = _sample("s1", at(8, 58), north_of_site(40))
    first = machine.apply_event(new_session, sample)
    second = machine.apply_event(first.session, sample)

    assert not second.accepted
    assert second.session is first.session
    assert [e.event_id for e in second.session.events].count("s1") == 1


def test_same_input_against_same_snapshot_is_deterministic(machine, new_session, north_of_site, at):
    sample = _sample("s1", at(8, 58), north_of_site(40))
    a = machine.apply_event(new_session, sample)
    b = machine.apply_event(new_session, sample)
    assert a.session.model_dump() == b.session.model_dump()


def test_inaccurate_sample_is_recorded_without_transition(machine, new_session, north_of_site, at):
    result = machine.apply_event(new_session, _sample("s1", at(8, 58), north_of_site(10), accuracy=80))

    assert result.accepted
    assert result.events[0].event_type == SessionEventType.LOCATION_UPDATE
    assert result.events[0].metadata["presence"] == "inconclusive"
    assert result.session.status == SessionStatus.SCHEDULED
    assert result.session.employee_present is False
    assert result.session.last_location is None


def test_early_arrival_clocks_in_once_window_allows(machine, new_session, north_of_site, at):
    session = machine.apply_event(new_session, _sample("s1", at(7), north_of_site(10))).session
    assert session.status == SessionStatus.SCHEDULED
    assert session.employee_present is True
    assert session.events[-1].event_type == SessionEventType.EMPLOYEE_ARRIVED

    # monitoring window opens at 08:50
    assert not machine.apply_event(session, TimeTick(now=at(8, 49))).accepted
    session = machine.apply_event(session, TimeTick(now=at(8, 50))).session
    assert session.status == SessionStatus.MONITORING_ACTIVE
    assert session.clocked_in is False

    result = machine.apply_event(session, TimeTick(now=at(8, 51)))
    assert result.events[0].event_type == SessionEventType.AUTO_CLOCK_IN
    assert result.session.clock_in_time == at(8, 51)
    assert result.session.arrival_time == at(7)


def test_minimum_time_at_site_delays_auto_clock_in(new_session, job_site, north_of_site, at):
    machine = SessionStateMachine(CompanyPolicySettings(minimum_time_at_site_minutes=5), job_site=job_site)
    session = machine.apply_event(new_session, _sample("s1", at(8, 58), north_of_site(10))).session
    assert session.status == SessionStatus.MONITORING_ACTIVE
    assert session.events[-1].event_type == SessionEventType.MONITORING_STARTED

    assert not machine.apply_event(session, TimeTick(now=at(9, 2))).accepted
    result = machine.apply_event(session, TimeTick(now=at(9, 3)))
    assert result.session.status == SessionStatus.CLOCKED_IN
    assert result.session.auto_clock_in_triggered is True


def test_leaving_site_resets_dwell(new_session, job_site, north_of_site, at):
    machine = SessionStateMachine(CompanyPolicySettings(minimum_time_at_site_minutes=5), job_site=job_site)
    session = machine.apply_event(new_session, _sample("s1", at(8, 56), north_of_site(10))).session
    session = machine.apply_event(session, _sample("s2", at(8, 58), north_of_site(300))).session
    assert session.employee_present is False
    session = machine.apply_event(session, _sample("s3", at(8, 59), north_of_site(10))).session

    assert not machine.apply_event(session, TimeTick(now=at(9, 2))).accepted
    assert machine.apply_event(session, TimeTick(now=at(9, 4))).session.clocked_in


def test_no_auto_clock_in_without_consent(new_session, policy, job_site, north_of_site, at):
    consent = ConsentSettings(employee_id="emp-1", consent_given=False, auto_tracking_enabled=True)
    machine = SessionStateMachine(policy, job_site=job_site, consent=consent)
    result = machine.apply_event(new_session, _sample("s1", at(8, 58), north_of_site(40)))

    assert result.session.status == SessionStatus.MONITORING_ACTIVE
    assert result.session.clocked_in is False
    assert result.session.employee_present is True


def test_geofence_exit_opens_break_and_return_closes_it(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)

    result = machine.apply_event(session, _sample("out", at(10), north_of_site(500)))
    session = result.session
    assert result.events[0].event_type == SessionEventType.BREAK_STARTED
    assert session.status == SessionStatus.ON_BREAK
    assert session.currently_on_break is True
    assert session.break_periods[-1].break_type == BreakType.GEOFENCE_EXIT
    assert session.departure_time == at(10)

    result = machine.apply_event(session, _sample("back", at(10, 3), north_of_site(20)))
    session = result.session
    assert result.events[0].event_type == SessionEventType.BREAK_ENDED
    assert session.status == SessionStatus.CLOCKED_IN
    assert session.currently_on_break is False
    assert session.break_periods[-1].duration_minutes == 3
    assert session.total_break_minutes == 3


def test_grace_expiry_forces_clock_out(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, _sample("out", at(10), north_of_site(500))).session

    assert not machine.apply_event(session, TimeTick(now=at(10, 4))).accepted

    result = machine.apply_event(session, TimeTick(now=at(10, 7)))
    session = result.session
    assert result.events[0].event_type == SessionEventType.AUTO_CLOCK_OUT
    assert result.events[0].triggered_by == TriggeredBy.GEOFENCE
    assert session.status == SessionStatus.COMPLETED
    # effective at departure + grace, not at the tick
    assert session.clock_out_time == at(10, 5)
    assert session.auto_clock_out_triggered is True
    assert session.break_periods[-1].end_time == at(10, 5)
    assert session.currently_on_break is False


def test_outside_sample_after_grace_forces_clock_out(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, _sample("out", at(10), north_of_site(500))).session
    result = machine.apply_event(session, _sample("still-out", at(10, 6), north_of_site(600)))

    assert result.events[0].event_type == SessionEventType.AUTO_CLOCK_OUT
    assert result.session.clock_out_time == at(10, 5)


def test_manual_break_suppresses_grace_clock_out(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, ManualAction(
        event_id="lunch", timestamp=at(12), action=ManualActionKind.START_BREAK, actor_id="emp-1",
    )).session
    session = machine.apply_event(session, _sample("out", at(12, 1), north_of_site(800))).session
    assert session.employee_present is False
    assert len(session.break_periods) == 1

    session = machine.apply_event(session, TimeTick(now=at(12, 30))).session
    assert session.status == SessionStatus.ON_BREAK
    assert session.clock_out_time is None


def test_manual_action_wins_at_same_instant(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, ManualAction(
        event_id="brk", timestamp=at(11), action=ManualActionKind.START_BREAK, actor_id="emp-1",
    )).session

    result = machine.apply_event(session, _sample("out", at(11), north_of_site(500)))
    event = result.events[0]
    assert event.metadata.get("automatic_suppressed") is True
    assert len(result.session.break_periods) == 1
    assert result.session.break_periods[0].break_type == BreakType.MANUAL


def test_manual_break_takes_over_geofence_break_at_same_instant(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, _sample("out", at(12), north_of_site(500))).session
    assert session.break_periods[-1].break_type == BreakType.GEOFENCE_EXIT

    result = machine.apply_event(session, ManualAction(
        event_id="lunch", timestamp=at(12), action=ManualActionKind.START_BREAK, actor_id="emp-1",
    ))
    session = result.session
    event = result.events[0]
    assert event.event_type == SessionEventType.BREAK_STARTED
    assert event.triggered_by == TriggeredBy.EMPLOYEE
    assert event.metadata["took_over"] == "geofence_exit"
    assert len(session.break_periods) == 1
    assert session.break_periods[0].break_type == BreakType.MANUAL
    assert session.break_periods[0].actor_id == "emp-1"

    # explicit intent: the exit grace period no longer forces a clock-out
    assert not machine.apply_event(session, TimeTick(now=at(12, 10))).accepted
    assert session.status == SessionStatus.ON_BREAK
    assert session.clock_out_time is None


def test_manual_clock_in_takes_over_auto_clock_in_at_same_instant(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    assert session.auto_clock_in_triggered is True

    result = machine.apply_event(session, ManualAction(
        event_id="in", timestamp=at(8, 58), action=ManualActionKind.CLOCK_IN,
        actor_id="emp-1", position=north_of_site(20), accuracy=5,
    ))
    session = result.session
    assert result.events[0].event_type == SessionEventType.MANUAL_CLOCK_IN
    assert result.events[0].metadata["took_over"] == "auto_clock_in"
    assert session.auto_clock_in_triggered is False
    assert session.clock_in_time == at(8, 58)

    with pytest.raises(PreconditionError) as exc_info:
        machine.apply_event(session, ManualAction(
            event_id="again", timestamp=at(9, 5), action=ManualActionKind.CLOCK_IN,
            actor_id="emp-1", position=north_of_site(20), accuracy=5,
        ))
    assert exc_info.value.code == "already_clocked_in"


def test_implausible_jump_is_recorded_not_applied(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    result = machine.apply_event(session, _sample("jump", at(8, 59), north_of_site(10_000)))

    session = result.session
    assert result.events[0].event_type == SessionEventType.ERROR_OCCURRED
    assert session.status == SessionStatus.CLOCKED_IN
    assert session.employee_present is True
    error = session.errors[-1]
    assert error.error_type == SessionErrorType.IMPLAUSIBLE_LOCATION
    assert error.severity == ErrorSeverity.WARNING
    assert error.resolved is False
    assert session.health_status == HealthStatus.WARNING


def test_missing_job_site_recorded_once(new_session, policy, north_of_site, at):
    machine = SessionStateMachine(policy)
    session = new_session.model_copy(update={"job_site": None})

    session = machine.apply_event(session, _sample("s1", at(8, 58), north_of_site(10))).session
    session = machine.apply_event(session, _sample("s2", at(8, 59), north_of_site(10))).session

    missing = [e for e in session.errors if e.error_type == SessionErrorType.MISSING_JOB_SITE]
    assert len(missing) == 1
    assert session.status == SessionStatus.SCHEDULED
    assert session.events[-1].event_type == SessionEventType.LOCATION_UPDATE


def test_out_of_order_sample_is_rejected(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, _sample("late", at(10), north_of_site(10))).session

    with pytest.raises(ConflictError) as exc_info:
        machine.apply_event(session, _sample("early", at(9, 30), north_of_site(10)))
    assert exc_info.value.code == ConflictError.OUT_OF_ORDER


def test_samples_after_close_are_ignored(machine, new_session, north_of_site, at):
    session = _clocked_in(machine, new_session, north_of_site, at)
    session = machine.apply_event(session, ManualAction(
        event_id="out", timestamp=at(17), action=ManualActionKind.CLOCK_OUT, actor_id="emp-1",
    )).session
    assert session.status == SessionStatus.COMPLETED
    assert not machine.apply_event(session, _sample("after", at(17, 5), north_of_site(10))).accepted
