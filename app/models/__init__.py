"""
Database models
"""
from app.models.audit_log import AuditLog
from app.models.job_site import JobSiteModel
from app.models.schedule import ScheduleModel, ScheduleChangeModel
from app.models.policy import CompanyPolicyModel, TrackingConsentModel
from app.models.schedule_session import ScheduleSessionModel, ScheduleSessionEventModel

__all__ = [
    "AuditLog",
    "JobSiteModel",
    "ScheduleModel",
    "ScheduleChangeModel",
    "CompanyPolicyModel",
    "TrackingConsentModel",
    "ScheduleSessionModel",
    "ScheduleSessionEventModel",
]
