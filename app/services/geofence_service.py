"""
Geofence evaluation: great-circle distance and in/out-of-radius decisions.
Pure functions, no I/O.
"""
import enum
import math
from dataclasses import dataclass
from typing import Optional

from app.schemas.policy import CompanyPolicySettings
from app.schemas.schedule import JobSite
from app.schemas.schedule_session import GeoPoint

EARTH_RADIUS_METERS = 6371000.0


class PresenceState(str, enum.Enum):
    INSIDE = "inside"
    OUTSIDE = "outside"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class PresenceReading:
    state: PresenceState
    distance_meters: Optional[float]
    allowed_radius_meters: Optional[float]

    @property
    def inside(self) -> bool:
        return self.state == PresenceState.INSIDE

    @property
    def conclusive(self) -> bool:
        return self.state != PresenceState.INCONCLUSIVE


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance in meters between two coordinates."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push h a hair outside [0, 1] for antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def site_center(job_site: JobSite) -> GeoPoint:
    return GeoPoint(latitude=job_site.latitude, longitude=job_site.longitude)


def within_radius(position: GeoPoint, job_site: JobSite, tolerance_meters: float = 0.0) -> bool:
    """True iff position lies within the site's radius plus tolerance."""
    return distance_meters(position, site_center(job_site)) <= job_site.radius_meters + max(0.0, tolerance_meters)


def evaluate_presence(
    position: GeoPoint,
    accuracy_meters: float,
    job_site: JobSite,
    policy: CompanyPolicySettings,
) -> PresenceReading:
    """
    Classify one location reading against a job site.

    A reading whose accuracy is worse than the policy bound neither confirms
    nor refutes presence; it is reported as inconclusive.
    """
    allowed = job_site.radius_meters + policy.geofence_radius_tolerance_meters
    if accuracy_meters > policy.geofence_accuracy_meters:
        return PresenceReading(PresenceState.INCONCLUSIVE, None, allowed)

    distance = distance_meters(position, site_center(job_site))
    state = PresenceState.INSIDE if distance <= allowed else PresenceState.OUTSIDE
    return PresenceReading(state, distance, allowed)
