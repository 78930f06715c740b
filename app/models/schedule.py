"""
Schedule and schedule change models
"""
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from app.db.base import Base
from app.schemas.schedule import ScheduleStatus


class ScheduleModel(Base):
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(String, nullable=False, unique=True, index=True)
    employee_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=False, index=True)
    job_site_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)  # UTC
    end_time = Column(DateTime(timezone=True), nullable=False)  # UTC
    shift_type = Column(String, nullable=False, default="regular")
    break_allowance_minutes = Column(Integer, nullable=False, default=0)
    expected_hours = Column(Float, nullable=True)
    recurrence_rule = Column(String, nullable=True)  # RFC 5545 RRULE body
    requires_approval = Column(Boolean, nullable=False, default=False)
    status = Column(SQLEnum(ScheduleStatus), nullable=False, default=ScheduleStatus.SCHEDULED)
    time_zone = Column(String, nullable=True)  # IANA zone
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)


class ScheduleChangeModel(Base):
    __tablename__ = "schedule_changes"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(String, nullable=False, index=True)
    changed_by = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    field = Column(String, nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False)
