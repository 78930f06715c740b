"""
Schedule, job site and schedule-conflict schemas.
"""
import enum
from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.policy import CompanyPolicySettings
from app.utils.datetime_utils import ensure_utc


class ScheduleStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConflictType(str, enum.Enum):
    OVERLAP = "overlap"
    INSUFFICIENT_REST = "insufficient_rest"
    DAILY_HOURS_LIMIT = "daily_hours_limit"
    WEEKLY_HOURS_LIMIT = "weekly_hours_limit"


class ConflictSeverity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"


class JobSite(BaseModel):
    """A work location with a circular geofence"""

    model_config = ConfigDict(from_attributes=True)

    job_site_id: str
    name: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius_meters: float = Field(..., ge=0)
    company_id: Optional[str] = None


class Schedule(BaseModel):
    """A planned shift for one employee at one job site"""

    model_config = ConfigDict(from_attributes=True)

    schedule_id: str
    employee_id: str
    company_id: str
    job_site_id: str
    start_time: datetime
    end_time: datetime
    shift_type: str = "regular"
    break_allowance_minutes: int = Field(default=0, ge=0)
    expected_hours: Optional[float] = Field(default=None, ge=0)
    recurrence_rule: Optional[str] = Field(default=None, description="RFC 5545 RRULE, e.g. FREQ=WEEKLY;BYDAY=MO,TU")
    requires_approval: bool = False
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    time_zone: Optional[str] = Field(default=None, description="IANA zone for local-time mirrors")
    created_by: Optional[str] = None
    # Set on occurrence copies produced by recurrence expansion
    occurrence_start: Optional[datetime] = None

    @field_validator("start_time", "end_time", "occurrence_start")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_cancelled(self) -> bool:
        return self.status == ScheduleStatus.CANCELLED

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60

    @property
    def conflict_key(self) -> str:
        """Identity of one occurrence: plain id, or id@start for expanded recurrences"""
        if self.occurrence_start is None:
            return self.schedule_id
        return f"{self.schedule_id}@{self.occurrence_start.isoformat()}"


class ScheduleCreate(BaseModel):
    """Schema for creating a schedule"""
    schedule_id: Optional[str] = None
    employee_id: str
    company_id: str
    job_site_id: str
    start_time: datetime
    end_time: datetime
    shift_type: str = "regular"
    break_allowance_minutes: int = Field(default=0, ge=0)
    expected_hours: Optional[float] = Field(default=None, ge=0)
    recurrence_rule: Optional[str] = None
    requires_approval: bool = False
    time_zone: Optional[str] = None
    created_by: Optional[str] = None


class ScheduleChangeRequest(BaseModel):
    """Schema for changing a schedule that is already in progress"""
    field: str = Field(..., description="start_time, end_time, job_site_id, break_allowance_minutes or status")
    new_value: Any
    changed_by: str
    reason: str = Field(..., min_length=1)


class ScheduleChange(BaseModel):
    """Audit record of one change to a schedule"""

    model_config = ConfigDict(from_attributes=True)

    schedule_id: str
    changed_by: str
    reason: str
    field: str
    old_value: Any = None
    new_value: Any = None
    changed_at: datetime


class JobSiteCreate(BaseModel):
    """Schema for registering a job site"""
    job_site_id: Optional[str] = None
    company_id: str
    name: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius_meters: float = Field(..., ge=0)


class ScheduleConflict(BaseModel):
    """A pair (or group) of schedules that overlap or break a scheduling rule"""

    conflict_id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    employee_id: str
    schedule_ids: List[str]
    message: str
    overlap_minutes: Optional[int] = None
    suggestions: List[str] = Field(default_factory=list)


class ConflictCheckRequest(BaseModel):
    """Schema for checking an ad-hoc schedule set for conflicts"""
    schedules: List[Schedule]
    policy: Optional[CompanyPolicySettings] = None


class ConflictCheckResponse(BaseModel):
    conflicts: List[ScheduleConflict]
    total: int


class ScheduleMoveCheck(BaseModel):
    schedule_id: str
    start_time: datetime
    end_time: datetime
    allowed: bool
