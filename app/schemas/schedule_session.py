"""
ScheduleSession schemas: the live, derived record of one schedule occurrence.

A session document is the system of record for one shift occurrence. Every
field here is only ever changed by SessionStateMachine.apply_event.
"""
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.schedule import JobSite
from app.utils.datetime_utils import ensure_utc


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    MONITORING_ACTIVE = "monitoring_active"
    CLOCKED_IN = "clocked_in"
    ON_BREAK = "on_break"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    ERROR = "error"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


PRE_WORK_STATUSES = frozenset({SessionStatus.SCHEDULED, SessionStatus.MONITORING_ACTIVE})
WORKING_STATUSES = frozenset({SessionStatus.CLOCKED_IN, SessionStatus.ON_BREAK})
TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.NO_SHOW,
    SessionStatus.CANCELLED,
    SessionStatus.ARCHIVED,
})


class SessionEventType(str, enum.Enum):
    SESSION_CREATED = "session_created"
    MONITORING_STARTED = "monitoring_started"
    EMPLOYEE_ARRIVED = "employee_arrived"
    EMPLOYEE_DEPARTED = "employee_departed"
    LOCATION_UPDATE = "location_update"
    AUTO_CLOCK_IN = "auto_clock_in"
    MANUAL_CLOCK_IN = "manual_clock_in"
    BREAK_STARTED = "break_started"
    BREAK_ENDED = "break_ended"
    AUTO_CLOCK_OUT = "auto_clock_out"
    MANUAL_CLOCK_OUT = "manual_clock_out"
    OVERTIME_STARTED = "overtime_started"
    OVERTIME_APPROVED = "overtime_approved"
    SCHEDULE_MODIFIED = "schedule_modified"
    NO_SHOW = "no_show"
    ERROR_OCCURRED = "error_occurred"
    ERROR_RESOLVED = "error_resolved"
    SESSION_REPAIRED = "session_repaired"
    SESSION_TERMINATED = "session_terminated"
    SESSION_ARCHIVED = "session_archived"


class TriggeredBy(str, enum.Enum):
    SCHEDULE = "schedule"
    EMPLOYEE = "employee"
    SYSTEM = "system"
    ADMIN = "admin"
    GEOFENCE = "geofence"


class BreakType(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"
    REQUIRED = "required"
    GEOFENCE_EXIT = "geofence_exit"


class OvertimeReason(str, enum.Enum):
    SCHEDULE_OVERRUN = "schedule_overrun"
    EARLY_ARRIVAL = "early_arrival"
    MANUAL_EXTENSION = "manual_extension"


class ErrorSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SessionErrorType(str, enum.Enum):
    GEOFENCE_FAILURE = "geofence_failure"
    LOCATION_TIMEOUT = "location_timeout"
    SCHEDULE_CONFLICT = "schedule_conflict"
    CLOUD_FUNCTION_FAILURE = "cloud_function_failure"
    DEVICE_OFFLINE = "device_offline"
    PERMISSION_DENIED = "permission_denied"
    IMPLAUSIBLE_LOCATION = "implausible_location"
    MISSING_JOB_SITE = "missing_job_site"
    STALE_SESSION = "stale_session"
    AUTO_TRANSITION_FAILURE = "auto_transition_failure"


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class BreakPeriod(BaseModel):
    break_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    break_type: BreakType
    triggered_by: TriggeredBy
    actor_id: Optional[str] = None
    duration_minutes: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None


class OvertimePeriod(BaseModel):
    overtime_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    reason: OvertimeReason = OvertimeReason.SCHEDULE_OVERRUN
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None


class ScheduleSessionEvent(BaseModel):
    """One entry of the append-only session audit trail"""
    event_id: str
    timestamp: datetime
    event_type: SessionEventType
    triggered_by: TriggeredBy
    actor_id: Optional[str] = None
    location: Optional[GeoPoint] = None
    accuracy: Optional[float] = None
    details: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AdminOverrideRecord(BaseModel):
    override_id: str
    action: str
    actor_id: str
    reason: str
    timestamp: datetime
    params: Dict[str, Any] = Field(default_factory=dict)
    before: Dict[str, Any] = Field(default_factory=dict)
    after: Dict[str, Any] = Field(default_factory=dict)


class SessionError(BaseModel):
    """A recorded, non-blocking anomaly surfaced to operators"""
    error_id: str
    error_type: SessionErrorType
    message: str
    severity: ErrorSeverity
    timestamp: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None


class SessionMetrics(BaseModel):
    """Derived figures for one session; recomputed in full, never patched"""
    scheduled_minutes: int
    worked_minutes: int
    break_minutes: int
    overtime_minutes: int
    punctuality_score: float
    attendance_rate: float
    break_adherence: float
    compliance_score: float
    health_status: HealthStatus


class ScheduleSession(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    # Identity
    session_id: str
    schedule_id: str
    employee_id: str
    job_site_id: str
    company_id: str
    occurrence_start: datetime

    # Timing
    scheduled_start: datetime
    scheduled_end: datetime
    time_zone: Optional[str] = None
    local_scheduled_start: Optional[datetime] = None
    local_scheduled_end: Optional[datetime] = None
    job_site: Optional[JobSite] = None

    # Presence
    employee_present: bool = False
    arrival_time: Optional[datetime] = None
    departure_time: Optional[datetime] = None
    present_since: Optional[datetime] = None
    last_location_update: Optional[datetime] = None
    last_location: Optional[GeoPoint] = None

    # Clock
    clocked_in: bool = False
    clock_in_time: Optional[datetime] = None
    clock_out_time: Optional[datetime] = None
    auto_clock_in_triggered: bool = False
    auto_clock_out_triggered: bool = False

    # Breaks and overtime
    currently_on_break: bool = False
    break_periods: List[BreakPeriod] = Field(default_factory=list)
    is_in_overtime: bool = False
    overtime_periods: List[OvertimePeriod] = Field(default_factory=list)

    # Status
    status: SessionStatus = SessionStatus.SCHEDULED
    status_before_error: Optional[SessionStatus] = None

    # Audit trail
    events: List[ScheduleSessionEvent] = Field(default_factory=list)
    admin_overrides: List[AdminOverrideRecord] = Field(default_factory=list)
    errors: List[SessionError] = Field(default_factory=list)

    # Derived metrics
    total_scheduled_minutes: int = 0
    total_worked_minutes: int = 0
    total_break_minutes: int = 0
    total_overtime_minutes: int = 0
    punctuality_score: float = 100.0
    attendance_rate: float = 0.0
    compliance_score: float = 0.0
    health_status: HealthStatus = HealthStatus.HEALTHY
    last_health_check: Optional[datetime] = None

    # Storage concurrency token; the state machine never changes it
    version: int = 0

    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None

    def has_event(self, event_id: str) -> bool:
        return any(e.event_id == event_id for e in self.events)

    def last_event_time(self) -> Optional[datetime]:
        if not self.events:
            return None
        return self.events[-1].timestamp

    def open_break(self) -> Optional[BreakPeriod]:
        if self.break_periods and self.break_periods[-1].end_time is None:
            return self.break_periods[-1]
        return None

    def open_overtime(self) -> Optional[OvertimePeriod]:
        if self.overtime_periods and self.overtime_periods[-1].end_time is None:
            return self.overtime_periods[-1]
        return None

    def unresolved_errors(self) -> List[SessionError]:
        return [e for e in self.errors if not e.resolved]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SessionCreateRequest(BaseModel):
    """Schema for opening the session of a schedule occurrence"""
    schedule_id: str
    occurrence_start: Optional[datetime] = None
    created_by: str = "system"


class SessionSummary(BaseModel):
    """Compact listing entry"""
    session_id: str
    schedule_id: str
    employee_id: str
    status: SessionStatus
    scheduled_start: datetime
    scheduled_end: datetime
    health_status: HealthStatus
    version: int


class SessionEventResult(BaseModel):
    """Outcome of applying one input to a stored session"""
    accepted: bool
    events: List[ScheduleSessionEvent]
    session: ScheduleSession
