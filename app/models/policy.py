"""
Company policy and tracking consent models
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from app.db.base import Base


class CompanyPolicyModel(Base):
    __tablename__ = "company_policy_settings"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String, nullable=False, unique=True, index=True)
    # CompanyPolicySettings as JSON; missing keys fall back to schema defaults
    settings_json = Column(JSON, nullable=False, default=dict)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)


class TrackingConsentModel(Base):
    __tablename__ = "tracking_consents"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(String, nullable=False, unique=True, index=True)
    auto_tracking_enabled = Column(Boolean, nullable=False, default=False)
    consent_given = Column(Boolean, nullable=False, default=False)
    consent_date = Column(DateTime(timezone=True), nullable=True)
    consent_version = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)
