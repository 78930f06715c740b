"""
Inputs accepted by SessionStateMachine.apply_event.

The input is a closed tagged union discriminated on ``event_type``. Every
variant carries an ``event_id`` used for replay deduplication.
"""
import enum
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import uuid4
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from app.core.errors import MalformedInputError
from app.schemas.schedule_session import ErrorSeverity, GeoPoint, SessionErrorType
from app.utils.datetime_utils import ensure_utc


def _new_event_id() -> str:
    return uuid4().hex


class ManualActionKind(str, enum.Enum):
    CLOCK_IN = "clock_in"
    CLOCK_OUT = "clock_out"
    START_BREAK = "start_break"
    END_BREAK = "end_break"


class AdminAction(str, enum.Enum):
    FORCE_CLOCK_IN = "force_clock_in"
    FORCE_CLOCK_OUT = "force_clock_out"
    START_BREAK = "start_break"
    END_BREAK = "end_break"
    EXTEND_SCHEDULE = "extend_schedule"
    TERMINATE_SESSION = "terminate_session"
    REPAIR_SESSION = "repair_session"
    APPROVE_OVERTIME = "approve_overtime"
    RESOLVE_ERROR = "resolve_error"


class _TimestampedInput(BaseModel):
    event_id: str = Field(default_factory=_new_event_id, min_length=1)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class LocationSample(_TimestampedInput):
    """A device location fix (also the heartbeat while tracking is active)"""
    event_type: Literal["location_sample"] = "location_sample"
    position: GeoPoint
    accuracy: float = Field(..., ge=0, description="Reported horizontal accuracy in meters")


class ManualAction(_TimestampedInput):
    """An explicit employee action"""
    event_type: Literal["manual_action"] = "manual_action"
    action: ManualActionKind
    actor_id: str
    position: Optional[GeoPoint] = None
    accuracy: Optional[float] = Field(default=None, ge=0)


class TimeTick(BaseModel):
    """Clock input driving no-show, overtime, break and health checks"""
    event_type: Literal["time_tick"] = "time_tick"
    now: datetime
    event_id: Optional[str] = None

    @field_validator("now")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _derive_event_id(self) -> "TimeTick":
        # Ticks at the same instant are the same input
        if not self.event_id:
            self.event_id = f"tick:{self.now.isoformat()}"
        return self

    @property
    def timestamp(self) -> datetime:
        return self.now


class AdminOverride(_TimestampedInput):
    """A forced transition issued from admin tooling"""
    event_type: Literal["admin_override"] = "admin_override"
    action: AdminAction
    actor_id: str
    reason: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class AnomalyReport(_TimestampedInput):
    """
    A non-blocking anomaly observed outside the machine (device offline,
    schedule conflict, failed background job) to be recorded as a SessionError.
    """
    event_type: Literal["anomaly_report"] = "anomaly_report"
    error_type: SessionErrorType
    message: str
    severity: ErrorSeverity = ErrorSeverity.WARNING
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


SessionInput = Annotated[
    Union[LocationSample, ManualAction, TimeTick, AdminOverride, AnomalyReport],
    Field(discriminator="event_type"),
]

_session_input_adapter = TypeAdapter(SessionInput)


def parse_session_input(data: Dict[str, Any]):
    """
    Parse a raw payload into one of the SessionInput variants

    Raises:
        MalformedInputError: If the payload matches no variant
    """
    try:
        return _session_input_adapter.validate_python(data)
    except ValidationError as exc:
        raise MalformedInputError(
            "Unrecognised session input",
            context={"errors": exc.errors(include_url=False, include_context=False)},
        )


class LocationFix(BaseModel):
    """What a LocationSource returns for one reading"""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_meters: float = Field(..., ge=0)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def to_sample(self, event_id: Optional[str] = None) -> LocationSample:
        return LocationSample(
            event_id=event_id or _new_event_id(),
            timestamp=self.timestamp,
            position=GeoPoint(latitude=self.latitude, longitude=self.longitude),
            accuracy=self.accuracy_meters,
        )
