"""
Job site model
"""
from sqlalchemy import Column, Integer, String, Float, DateTime
from sqlalchemy.sql import func
from app.db.base import Base


class JobSiteModel(Base):
    __tablename__ = "job_sites"

    id = Column(Integer, primary_key=True, index=True)
    job_site_id = Column(String, nullable=False, unique=True, index=True)
    company_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False)  # geofence radius around (latitude, longitude)
    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)
