"""
Tests for geofence distance and presence evaluation
"""
import math

import pytest

from app.schemas.policy import CompanyPolicySettings
from app.schemas.schedule_session import GeoPoint
from app.services.geofence_service import (
    EARTH_RADIUS_METERS,
    PresenceState,
    distance_meters,
    evaluate_presence,
    within_radius,
)


def test_distance_to_self_is_zero():
    point = GeoPoint(latitude=51.5, longitude=-0.12)
    assert distance_meters(point, point) == 0.0


def test_one_degree_of_latitude():
    a = GeoPoint(latitude=0.0, longitude=10.0)
    b = GeoPoint(latitude=1.0, longitude=10.0)
    assert distance_meters(a, b) == pytest.approx(EARTH_RADIUS_METERS * math.pi / 180, rel=1e-9)


def test_distance_is_symmetric():
    a = GeoPoint(latitude=40.7128, longitude=-74.0060)
    b = GeoPoint(latitude=34.0522, longitude=-118.2437)
    assert distance_meters(a, b) == pytest.approx(distance_meters(b, a))
    # New York to Los Angeles, roughly 3936 km
    assert 3_900_000 < distance_meters(a, b) < 3_980_000


def test_antipodal_points_are_half_circumference():
    a = GeoPoint(latitude=0.0, longitude=0.0)
    b = GeoPoint(latitude=0.0, longitude=180.0)
    assert distance_meters(a, b) == pytest.approx(EARTH_RADIUS_METERS * math.pi, rel=1e-9)


@pytest.mark.parametrize("radius", [0.0, 1.0, 100.0, 5000.0])
def test_site_center_is_always_within_radius(job_site, radius):
    site = job_site.model_copy(update={"radius_meters": radius})
    center = GeoPoint(latitude=site.latitude, longitude=site.longitude)
    assert within_radius(center, site) is True


def test_within_radius_respects_tolerance(job_site, north_of_site):
    position = north_of_site(150)
    assert within_radius(position, job_site) is False
    assert within_radius(position, job_site, tolerance_meters=40) is False
    assert within_radius(position, job_site, tolerance_meters=60) is True


def test_radius_boundary_is_inclusive(job_site, north_of_site):
    assert within_radius(north_of_site(99.9), job_site) is True
    assert within_radius(north_of_site(100.1), job_site) is False


def test_evaluate_presence_inside(job_site, north_of_site, policy):
    reading = evaluate_presence(north_of_site(40), 10, job_site, policy)
    assert reading.state == PresenceState.INSIDE
    assert reading.inside and reading.conclusive
    assert reading.distance_meters == pytest.approx(40, abs=0.01)
    assert reading.allowed_radius_meters == 100


def test_evaluate_presence_outside(job_site, north_of_site, policy):
    reading = evaluate_presence(north_of_site(250), 10, job_site, policy)
    assert reading.state == PresenceState.OUTSIDE
    assert not reading.inside
    assert reading.conclusive


def test_inaccurate_reading_is_inconclusive(job_site, north_of_site, policy):
    """A poor fix neither confirms nor refutes presence"""
    inside = evaluate_presence(north_of_site(10), 80, job_site, policy)
    outside = evaluate_presence(north_of_site(900), 80, job_site, policy)
    for reading in (inside, outside):
        assert reading.state == PresenceState.INCONCLUSIVE
        assert reading.distance_meters is None
        assert not reading.conclusive


def test_policy_tolerance_widens_allowed_radius(job_site, north_of_site):
    policy = CompanyPolicySettings(geofence_radius_tolerance_meters=50)
    reading = evaluate_presence(north_of_site(140), 5, job_site, policy)
    assert reading.inside
    assert reading.allowed_radius_meters == 150
