"""
Tests for SessionStore and ConsentStore persistence
"""
import pytest

from app.core.errors import ConflictError, SessionNotFoundError
from app.models.audit_log import AuditLog
from app.schemas.policy import ConsentUpdate
from app.schemas.schedule_session import SessionEventType, SessionStatus
from app.schemas.session_events import LocationSample, ManualAction, ManualActionKind
from app.services.session_store import ConsentStore, SessionStore


@pytest.fixture
def store(db):
    return SessionStore(db)


@pytest.fixture
def stored(store, new_session):
    return store.create(new_session)


def test_create_starts_at_version_one(store, stored, new_session):
    assert stored.version == 1
    loaded = store.load(new_session.session_id)
    assert loaded.version == 1
    assert loaded.status == SessionStatus.SCHEDULED
    assert [e.event_type for e in loaded.events] == [SessionEventType.SESSION_CREATED]


def test_second_session_for_same_occurrence_rejected(store, stored, new_session):
    duplicate = new_session.model_copy(update={"session_id": "another-id"})
    with pytest.raises(ConflictError) as exc_info:
        store.create(duplicate)
    assert exc_info.value.code == ConflictError.DUPLICATE_SESSION
    assert exc_info.value.status_code == 409


def test_save_increments_version_and_appends_event_rows(store, stored, machine, north_of_site, at):
    result = machine.apply_event(stored, LocationSample(
        event_id="s1", timestamp=at(8, 58), position=north_of_site(20), accuracy=5,
    ))
    saved = store.save(result.session, result.events)
    assert saved.version == 2

    loaded = store.load(stored.session_id)
    assert loaded.version == 2
    assert loaded.status == SessionStatus.CLOCKED_IN

    rows = store.list_events(stored.session_id)
    assert [r.sequence for r in rows] == [0, 1]
    assert rows[1].event_id == "s1"
    assert rows[1].event_type == SessionEventType.AUTO_CLOCK_IN


def test_stale_snapshot_rejected(store, stored, machine, north_of_site, at):
    first = machine.apply_event(stored, LocationSample(
        event_id="s1", timestamp=at(8, 58), position=north_of_site(20), accuracy=5,
    ))
    store.save(first.session, first.events)

    # a second writer still holding version 1
    second = machine.apply_event(stored, LocationSample(
        event_id="s2", timestamp=at(8, 59), position=north_of_site(20), accuracy=5,
    ))
    with pytest.raises(ConflictError) as exc_info:
        store.save(second.session, second.events)
    assert exc_info.value.code == ConflictError.STALE_SNAPSHOT

    loaded = store.load(stored.session_id)
    assert loaded.version == 2
    assert not loaded.has_event("s2")


def test_list_active_skips_terminal_sessions(store, stored, machine, north_of_site, at):
    assert store.list_active() == [stored.session_id]
    assert store.list_active(company_id="other-co") == []

    session = stored
    for event in (
        ManualAction(event_id="in", timestamp=at(9), action=ManualActionKind.CLOCK_IN,
                     actor_id="emp-1", position=north_of_site(10), accuracy=5),
        ManualAction(event_id="out", timestamp=at(17), action=ManualActionKind.CLOCK_OUT, actor_id="emp-1"),
    ):
        result = machine.apply_event(session, event)
        session = store.save(result.session, result.events)

    assert session.status == SessionStatus.COMPLETED
    assert store.list_active() == []
    assert [s.session_id for s in store.list_for_employee("emp-1")] == [stored.session_id]
    assert store.list_for_employee("emp-1", statuses=[SessionStatus.CLOCKED_IN]) == []


def test_load_unknown_session(store):
    with pytest.raises(SessionNotFoundError) as exc_info:
        store.load("missing")
    assert exc_info.value.status_code == 404


def test_find_by_occurrence(store, stored, new_session, at):
    found = store.find_by_occurrence("sched-1", at(9))
    assert found is not None
    assert found.session_id == new_session.session_id
    assert store.find_by_occurrence("sched-1", at(9, day=1)) is None


def test_document_round_trip_is_lossless(store, stored, machine, north_of_site, at):
    session = stored
    for event in (
        LocationSample(event_id="s1", timestamp=at(8, 58), position=north_of_site(20), accuracy=5),
        ManualAction(event_id="b", timestamp=at(12), action=ManualActionKind.START_BREAK, actor_id="emp-1"),
    ):
        result = machine.apply_event(session, event)
        session = store.save(result.session, result.events)

    assert store.load(session.session_id).model_dump() == session.model_dump()


def test_consent_defaults_to_not_given(db):
    consent = ConsentStore(db).get("emp-9")
    assert consent.employee_id == "emp-9"
    assert consent.consent_given is False
    assert consent.tracking_permitted is False


def test_consent_set_and_revoke_are_audited(db):
    consents = ConsentStore(db)
    granted = consents.set("emp-1", ConsentUpdate(auto_tracking_enabled=True, consent_given=True,
                                                  consent_version="v2"))
    assert granted.tracking_permitted is True
    assert granted.consent_date is not None
    assert granted.consent_version == "v2"

    revoked = consents.set("emp-1", ConsentUpdate(auto_tracking_enabled=True, consent_given=False),
                           actor_id="hr-1")
    assert revoked.tracking_permitted is False
    assert revoked.consent_date is None
    assert consents.get("emp-1").consent_given is False

    actions = [(a.action, a.actor_id) for a in db.query(AuditLog).order_by(AuditLog.id).all()]
    assert actions == [("CONSENT_GRANTED", "emp-1"), ("CONSENT_REVOKED", "hr-1")]
