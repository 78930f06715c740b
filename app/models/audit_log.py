"""
Audit log model
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from app.db.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(String, nullable=False)
    action = Column(String, nullable=False)  # e.g., "MANUAL_CLOCK_IN", "ADMIN_FORCE_CLOCK_OUT", "POLICY_UPDATE"
    entity_type = Column(String, nullable=False)  # e.g., "schedule_session", "schedule", "company_policy"
    entity_id = Column(String, nullable=True)
    meta_json = Column(JSON, nullable=True)
    # Note: server_default handled by migration (CURRENT_TIMESTAMP for SQLite, now() for PostgreSQL)
    created_at = Column(DateTime(timezone=True), nullable=False)
