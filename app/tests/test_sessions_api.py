"""
Tests for the HTTP surface: job sites, schedules, sessions, policies, consents, tracking, orchestrator
"""
import pytest
from sqlalchemy.orm import sessionmaker

from app.core.deps import get_location_buffer, get_tracking_coordinator
from app.main import app
from app.services.session_service import DatabaseSessionGateway
from app.services.tracking_coordinator import BufferedLocationSource, TrackingCoordinator

# Sessions opened over HTTP are stamped with the real clock; keep shifts after it
SHIFT_START = "2030-03-04T09:00:00Z"
SHIFT_END = "2030-03-04T17:00:00Z"
SESSION_ID = "sched-1:20300304T090000Z"
INSIDE = {"latitude": 40.0001, "longitude": -74.0}


@pytest.fixture
def site(client):
    response = client.post("/api/v1/job-sites", json={
        "job_site_id": "site-1",
        "company_id": "acme",
        "name": "Main Street Depot",
        "latitude": 40.0,
        "longitude": -74.0,
        "radius_meters": 100,
    })
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def shift(client, site):
    response = client.post("/api/v1/schedules", json={
        "schedule_id": "sched-1",
        "employee_id": "emp-1",
        "company_id": "acme",
        "job_site_id": "site-1",
        "start_time": SHIFT_START,
        "end_time": SHIFT_END,
        "created_by": "admin-1",
    })
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def session_id(client, shift):
    response = client.post("/api/v1/sessions", json={"schedule_id": "sched-1"})
    assert response.status_code == 201
    return response.json()["session_id"]


@pytest.fixture
def coordinator(db):
    gateway = DatabaseSessionGateway(sessionmaker(bind=db.get_bind()))
    coordinator = TrackingCoordinator(BufferedLocationSource(), gateway, gateway.consent, sample_interval=3600)
    app.dependency_overrides[get_tracking_coordinator] = lambda: coordinator
    yield coordinator
    coordinator.stop_all()
    app.dependency_overrides.pop(get_tracking_coordinator, None)


@pytest.fixture
def location_buffer():
    buffer = BufferedLocationSource()
    app.dependency_overrides[get_location_buffer] = lambda: buffer
    yield buffer
    app.dependency_overrides.pop(get_location_buffer, None)


def _clock_in(event_id="in", timestamp=SHIFT_START):
    return {
        "event_type": "manual_action",
        "event_id": event_id,
        "timestamp": timestamp,
        "action": "clock_in",
        "actor_id": "emp-1",
        "position": INSIDE,
        "accuracy": 5,
    }


def test_job_site_and_schedule_round_trip(client, site, shift):
    assert client.get("/api/v1/job-sites/site-1").json()["radius_meters"] == 100
    fetched = client.get("/api/v1/schedules/sched-1").json()
    assert fetched["employee_id"] == "emp-1"
    assert fetched["status"] == "scheduled"

    missing = client.get("/api/v1/schedules/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "schedule_not_found"


def test_schedule_ending_before_start_is_malformed(client, site):
    response = client.post("/api/v1/schedules", json={
        "employee_id": "emp-1", "company_id": "acme", "job_site_id": "site-1",
        "start_time": SHIFT_END, "end_time": SHIFT_START,
    })
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "malformed_input"


def test_open_session(client, session_id):
    assert session_id == SESSION_ID
    session = client.get(f"/api/v1/sessions/{SESSION_ID}").json()
    assert session["status"] == "scheduled"
    assert session["version"] == 1

    again = client.post("/api/v1/sessions", json={"schedule_id": "sched-1"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "duplicate_session"


def test_list_sessions_for_employee(client, session_id):
    listed = client.get("/api/v1/sessions", params={"employee_id": "emp-1"}).json()
    assert [s["session_id"] for s in listed] == [SESSION_ID]
    assert listed[0]["health_status"] == "healthy"

    scheduled = client.get("/api/v1/sessions", params={"employee_id": "emp-1", "status": "scheduled"})
    assert len(scheduled.json()) == 1
    completed = client.get("/api/v1/sessions", params={"employee_id": "emp-1", "status": "completed"})
    assert completed.json() == []
    assert client.get("/api/v1/sessions", params={"employee_id": "emp-2"}).json() == []


def test_apply_events(client, session_id):
    url = f"/api/v1/sessions/{session_id}/events"

    response = client.post(url, json=_clock_in())
    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] is True
    assert [e["event_type"] for e in body["events"]] == ["manual_clock_in"]
    assert body["session"]["status"] == "clocked_in"
    assert body["session"]["version"] == 2

    replay = client.post(url, json=_clock_in())
    assert replay.status_code == 200
    assert replay.json()["accepted"] is False
    assert replay.json()["events"] == []

    rejected = client.post(url, json=_clock_in(event_id="in-2", timestamp="2030-03-04T09:05:00Z"))
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["code"] == "already_clocked_in"

    late = client.post(url, json={
        "event_type": "location_sample",
        "event_id": "old",
        "timestamp": "2030-03-04T08:00:00Z",
        "position": INSIDE,
        "accuracy": 5,
    })
    assert late.status_code == 409
    assert late.json()["detail"]["code"] == "out_of_order_event"

    malformed = client.post(url, json={"event_type": "teleport", "timestamp": SHIFT_START})
    assert malformed.status_code == 422
    assert malformed.json()["detail"]["code"] == "malformed_input"

    events = client.get(f"/api/v1/sessions/{session_id}/events").json()
    assert [e["event_type"] for e in events] == ["session_created", "manual_clock_in"]


def test_unknown_session(client):
    response = client.post("/api/v1/sessions/missing/events", json=_clock_in())
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "session_not_found"
    assert response.json()["path"] == "/api/v1/sessions/missing/events"


def test_metrics_as_of_instant(client, session_id):
    client.post(f"/api/v1/sessions/{session_id}/events", json=_clock_in())
    response = client.get(f"/api/v1/sessions/{session_id}/metrics", params={"now": "2030-03-04T13:00:00Z"})
    assert response.status_code == 200
    metrics = response.json()
    assert metrics["worked_minutes"] == 240
    assert metrics["scheduled_minutes"] == 480
    assert metrics["attendance_rate"] == 50.0


def test_admin_override_over_http(client, session_id):
    url = f"/api/v1/sessions/{session_id}/events"
    client.post(url, json=_clock_in())
    response = client.post(url, json={
        "event_type": "admin_override",
        "event_id": "fco",
        "timestamp": "2030-03-04T18:00:00Z",
        "action": "force_clock_out",
        "actor_id": "admin-7",
        "reason": "Forgot to clock out",
    })
    assert response.status_code == 200
    session = response.json()["session"]
    assert session["status"] == "completed"
    assert session["admin_overrides"][0]["actor_id"] == "admin-7"


def test_conflicts_for_stored_schedules(client, session_id):
    client.post("/api/v1/schedules", json={
        "schedule_id": "sched-2", "employee_id": "emp-1", "company_id": "acme", "job_site_id": "site-1",
        "start_time": "2030-03-04T16:00:00Z", "end_time": "2030-03-04T20:00:00Z",
    })
    response = client.get("/api/v1/employees/emp-1/conflicts", params={
        "start": "2030-03-04T00:00:00Z", "end": "2030-03-05T00:00:00Z",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["conflicts"][0]["conflict_type"] == "overlap"
    assert body["conflicts"][0]["severity"] == "error"

    session = client.get(f"/api/v1/sessions/{session_id}").json()
    assert [e["error_type"] for e in session["errors"]] == ["schedule_conflict"]


def test_posting_overlapping_schedule_annotates_live_session(client, session_id):
    response = client.post("/api/v1/schedules", json={
        "schedule_id": "sched-2", "employee_id": "emp-1", "company_id": "acme", "job_site_id": "site-1",
        "start_time": "2030-03-04T16:00:00Z", "end_time": "2030-03-04T20:00:00Z",
    })
    assert response.status_code == 201

    session = client.get(f"/api/v1/sessions/{session_id}").json()
    assert [e["error_type"] for e in session["errors"]] == ["schedule_conflict"]


def test_schedule_move_check_and_change(client, session_id):
    client.post("/api/v1/schedules", json={
        "schedule_id": "sched-2", "employee_id": "emp-1", "company_id": "acme", "job_site_id": "site-1",
        "start_time": "2030-03-06T13:00:00Z", "end_time": "2030-03-06T17:00:00Z",
    })
    assert client.get(f"/api/v1/sessions/{session_id}").json()["errors"] == []

    blocked = client.get("/api/v1/schedules/sched-2/move-check", params={
        "start": "2030-03-04T12:00:00Z", "end": "2030-03-04T20:00:00Z",
    })
    assert blocked.status_code == 200
    assert blocked.json()["allowed"] is False
    free = client.get("/api/v1/schedules/sched-2/move-check", params={
        "start": "2030-03-05T09:00:00Z", "end": "2030-03-05T17:00:00Z",
    })
    assert free.json()["allowed"] is True

    changed = client.post("/api/v1/schedules/sched-2/changes", json={
        "field": "start_time", "new_value": "2030-03-04T13:00:00Z",
        "changed_by": "manager-1", "reason": "Cover the afternoon",
    })
    assert changed.status_code == 201
    session = client.get(f"/api/v1/sessions/{session_id}").json()
    assert "schedule_conflict" in [e["error_type"] for e in session["errors"]]


def test_conflict_check_of_posted_set(client):
    def _schedule(schedule_id, start, end):
        return {"schedule_id": schedule_id, "employee_id": "emp-1", "company_id": "acme",
                "job_site_id": "site-1", "start_time": start, "end_time": end}

    response = client.post("/api/v1/schedules/conflicts", json={"schedules": [
        _schedule("a", SHIFT_START, SHIFT_END),
        _schedule("b", "2030-03-04T16:00:00Z", "2030-03-04T20:00:00Z"),
    ]})
    assert response.status_code == 200
    assert response.json()["total"] == 1
    assert response.json()["conflicts"][0]["schedule_ids"] == ["a", "b"]


def test_policy_endpoints(client):
    assert client.get("/api/v1/policies/acme").json()["no_show_grace_period_minutes"] == 15

    response = client.put("/api/v1/policies/acme", params={"actor_id": "admin-1"},
                          json={"no_show_grace_period_minutes": 20})
    assert response.status_code == 200
    assert response.json()["no_show_grace_period_minutes"] == 20
    assert client.get("/api/v1/policies/acme").json()["no_show_grace_period_minutes"] == 20

    invalid = client.put("/api/v1/policies/acme", json={
        "punctuality_weight": 0, "attendance_weight": 0, "break_adherence_weight": 0, "error_free_weight": 0,
    })
    assert invalid.status_code == 422


def test_consent_and_tracking(client, session_id, coordinator):
    refused = client.post(f"/api/v1/tracking/{session_id}/start")
    assert refused.status_code == 400
    assert refused.json()["detail"]["code"] == "consent_required"

    consent = client.put("/api/v1/consents/emp-1", json={
        "auto_tracking_enabled": True, "consent_given": True, "consent_version": "v1",
    })
    assert consent.status_code == 200
    assert consent.json()["consent_given"] is True

    started = client.post(f"/api/v1/tracking/{session_id}/start")
    assert started.status_code == 200
    assert started.json()["tracking"] is True
    assert coordinator.is_tracking(session_id)

    # revoking consent stops tracking at once
    client.put("/api/v1/consents/emp-1", json={"auto_tracking_enabled": True, "consent_given": False})
    assert not coordinator.is_tracking(session_id)

    stopped = client.post(f"/api/v1/tracking/{session_id}/stop")
    assert stopped.json() == {"session_id": session_id, "tracking": False, "was_tracking": False}


def test_location_upload_is_buffered(client, session_id, coordinator, location_buffer):
    response = client.post(f"/api/v1/tracking/{session_id}/location", json={
        "latitude": 40.0001,
        "longitude": -74.0,
        "accuracy_meters": 8,
        "timestamp": "2030-03-04T08:58:00Z",
    })
    assert response.status_code == 200
    assert response.json()["buffered"] is True
    assert response.json()["tracking"] is False
    assert location_buffer.sample("emp-1").accuracy_meters == 8


def test_orchestrator_run(client, shift):
    response = client.post("/api/v1/orchestrator/run", params={"now": "2030-03-04T08:55:00Z"})
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "created": 1, "ticked": 1, "failed": 0}

    session = client.get(f"/api/v1/sessions/{SESSION_ID}").json()
    assert session["status"] == "monitoring_active"
