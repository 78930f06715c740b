"""
Pytest configuration and fixtures
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.engine import Engine
from app.main import app
from app.db.base import Base
from app.core import deps
from app.core.deps import get_db
from app.schemas.policy import CompanyPolicySettings, ConsentUpdate
from app.schemas.schedule import JobSite, JobSiteCreate, Schedule, ScheduleCreate
from app.schemas.schedule_session import GeoPoint
from app.services import notification_hooks
from app.services.schedule_service import create_job_site, create_schedule
from app.services.session_state_machine import SessionStateMachine, create_session
from app.services.session_store import ConsentStore

# Import all models to ensure they're registered with Base.metadata
import app.models as _app_models  # noqa: F401


# Use in-memory SQLite for testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Enable foreign keys for SQLite
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Monday; all pure state-machine scenarios run on this day
SHIFT_DAY = datetime(2026, 3, 2, tzinfo=timezone.utc)
SITE_LATITUDE = 40.0
SITE_LONGITUDE = -74.0
# Meters per degree of latitude on the haversine sphere
METERS_PER_DEGREE = 6371000.0 * 3.141592653589793 / 180


def _at(hour: int, minute: int = 0, day: int = 0) -> datetime:
    return SHIFT_DAY + timedelta(days=day, hours=hour, minutes=minute)


def _north_of_site(meters: float) -> GeoPoint:
    return GeoPoint(latitude=SITE_LATITUDE + meters / METERS_PER_DEGREE, longitude=SITE_LONGITUDE)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Hook subscribers and the shared policy cache are process-wide"""
    notification_hooks.clear_subscribers()
    deps.get_policy_cache().invalidate()
    yield
    notification_hooks.clear_subscribers()
    deps.get_policy_cache().invalidate()


@pytest.fixture
def at():
    """at(hour, minute=0, day=0) -> UTC instant on the test shift day"""
    return _at


@pytest.fixture
def north_of_site():
    """north_of_site(meters) -> GeoPoint that many meters due north of the site center"""
    return _north_of_site


@pytest.fixture
def policy():
    return CompanyPolicySettings()


@pytest.fixture
def job_site():
    return JobSite(
        job_site_id="site-1",
        name="Main Street Depot",
        latitude=SITE_LATITUDE,
        longitude=SITE_LONGITUDE,
        radius_meters=100.0,
        company_id="acme",
    )


@pytest.fixture
def schedule():
    """09:00-17:00 UTC shift for emp-1 at site-1"""
    return Schedule(
        schedule_id="sched-1",
        employee_id="emp-1",
        company_id="acme",
        job_site_id="site-1",
        start_time=_at(9),
        end_time=_at(17),
    )


@pytest.fixture
def new_session(schedule, job_site, policy):
    return create_session(schedule, job_site=job_site, policy=policy, now=_at(8))


@pytest.fixture
def machine(policy, job_site):
    return SessionStateMachine(policy, job_site=job_site)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Test client fixture with database override"""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stored_job_site(db):
    return create_job_site(db, JobSiteCreate(
        job_site_id="site-1",
        company_id="acme",
        name="Main Street Depot",
        latitude=SITE_LATITUDE,
        longitude=SITE_LONGITUDE,
        radius_meters=100.0,
    ))


@pytest.fixture
def stored_schedule(db, stored_job_site):
    return create_schedule(db, ScheduleCreate(
        schedule_id="sched-1",
        employee_id="emp-1",
        company_id="acme",
        job_site_id="site-1",
        start_time=_at(9),
        end_time=_at(17),
        created_by="admin-1",
    ))


@pytest.fixture
def consent_granted(db):
    return ConsentStore(db).set(
        "emp-1",
        ConsentUpdate(auto_tracking_enabled=True, consent_given=True, consent_version="v1"),
    )
