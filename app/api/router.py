"""
Main API router
"""
from fastapi import APIRouter

from app.api.v1 import (
    health,
    sessions,
    schedules,
    policies,
    tracking,
    orchestrator,
)

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(schedules.router, prefix="/schedules", tags=["schedules"])
api_router.include_router(schedules.job_sites_router, prefix="/job-sites", tags=["job-sites"])
api_router.include_router(schedules.employees_router, prefix="/employees", tags=["conflicts"])
api_router.include_router(policies.router, prefix="/policies", tags=["policies"])
api_router.include_router(policies.consents_router, prefix="/consents", tags=["consents"])
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"])
api_router.include_router(orchestrator.router, prefix="/orchestrator", tags=["orchestrator"])
