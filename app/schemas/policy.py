"""
Company policy and tracking-consent schemas.

CompanyPolicySettings is owned by admin tooling; the engine only reads it.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CompanyPolicySettings(BaseModel):
    """Per-company time-tracking policy consumed by every engine component"""

    model_config = ConfigDict(from_attributes=True)

    # Geofence
    geofence_accuracy_meters: float = Field(default=50.0, gt=0, description="Worse accuracy makes a sample inconclusive")
    geofence_radius_tolerance_meters: float = Field(default=0.0, ge=0, description="Added to every job-site radius")
    minimum_time_at_site_minutes: int = Field(default=0, ge=0, description="Continuous presence required before auto clock-in")
    geofence_exit_grace_period_minutes: int = Field(default=5, ge=0)
    geofence_based_breaks: bool = Field(default=True, description="Leaving the site while clocked in opens a geofence_exit break")

    # Clock in / out
    auto_clock_in_enabled: bool = True
    allow_clock_in_early: bool = False
    clock_in_buffer_minutes: int = Field(default=15, ge=0, description="Earliest clock-in is start minus this buffer")
    allow_clock_out_early: bool = True
    clock_out_buffer_minutes: int = Field(default=30, ge=0, description="Auto clock-out fires this long after scheduled end")
    auto_clock_out_at_end: bool = False
    no_show_grace_period_minutes: int = Field(default=15, ge=0)
    monitoring_window_minutes: int = Field(default=10, ge=0, description="Lead time before start when monitoring begins")

    # Overtime
    overtime_threshold_minutes: int = Field(default=480, ge=0)
    allow_overtime: bool = True

    # Breaks
    required_break_duration_minutes: int = Field(default=30, ge=0)
    minimum_work_before_break_minutes: int = Field(default=240, gt=0)
    auto_start_break: bool = False
    schedule_based_breaks: bool = False
    auto_end_break: bool = False

    # Scoring
    punctuality_penalty_per_minute: float = Field(default=2.0, ge=0)
    punctuality_weight: float = Field(default=0.3, ge=0)
    attendance_weight: float = Field(default=0.3, ge=0)
    break_adherence_weight: float = Field(default=0.2, ge=0)
    error_free_weight: float = Field(default=0.2, ge=0)

    # Health checks
    location_timeout_minutes: int = Field(default=15, gt=0)
    stale_session_hours: int = Field(default=12, gt=0)
    error_archive_after_hours: int = Field(default=72, gt=0)
    max_plausible_speed_mps: float = Field(default=70.0, gt=0, description="Faster movement between fixes is an implausible jump")

    # Schedule conflicts
    minimum_rest_minutes: int = Field(default=480, ge=0)
    max_daily_hours: float = Field(default=12.0, gt=0)
    max_weekly_hours: float = Field(default=60.0, gt=0)

    @field_validator("error_free_weight")
    @classmethod
    def validate_weights(cls, v: float, info) -> float:
        """At least one compliance component must carry weight"""
        others = [
            info.data.get("punctuality_weight", 0),
            info.data.get("attendance_weight", 0),
            info.data.get("break_adherence_weight", 0),
        ]
        if v + sum(w or 0 for w in others) <= 0:
            raise ValueError("compliance weights must not all be zero")
        return v


class ConsentSettings(BaseModel):
    """An employee's background-tracking consent"""

    model_config = ConfigDict(from_attributes=True)

    employee_id: str
    auto_tracking_enabled: bool = False
    consent_given: bool = False
    consent_date: Optional[datetime] = None
    consent_version: Optional[str] = None

    @property
    def tracking_permitted(self) -> bool:
        return self.consent_given and self.auto_tracking_enabled


class ConsentUpdate(BaseModel):
    """Schema for updating consent"""
    auto_tracking_enabled: bool
    consent_given: bool
    consent_version: Optional[str] = None
