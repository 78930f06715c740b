"""
Schedule session document and its append-only event rows.

The whole ScheduleSession is stored as one JSON document guarded by an
integer version (optimistic concurrency). Events are additionally written as
rows so the trail can be queried without loading the document.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from app.db.base import Base
from app.schemas.schedule_session import SessionStatus, SessionEventType, TriggeredBy


class ScheduleSessionModel(Base):
    __tablename__ = "schedule_sessions"
    __table_args__ = (
        UniqueConstraint("schedule_id", "occurrence_start", name="uq_schedule_sessions_occurrence"),
    )

    id = Column(String, primary_key=True)  # session_id
    schedule_id = Column(String, nullable=False, index=True)
    occurrence_start = Column(DateTime(timezone=True), nullable=False)
    employee_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(SessionStatus), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)


class ScheduleSessionEventModel(Base):
    __tablename__ = "schedule_session_events"
    __table_args__ = (
        UniqueConstraint("session_id", "event_id", name="uq_schedule_session_events_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False)
    sequence = Column(Integer, nullable=False)  # position in the session's event log
    event_type = Column(SQLEnum(SessionEventType), nullable=False)
    triggered_by = Column(SQLEnum(TriggeredBy), nullable=False)
    actor_id = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    details = Column(Text, nullable=True)
    meta_json = Column(JSON, nullable=True)
