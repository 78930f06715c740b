"""
Orchestrator endpoint: one pass of session creation and TimeTick delivery
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_policy_cache
from app.services.policy_service import PolicyCache
from app.services.session_service import run_orchestrator_pass

router = APIRouter()


@router.post("/run")
async def run_orchestrator_endpoint(
    now: Optional[datetime] = Query(None, description="Pass time (default: current time)"),
    db: Session = Depends(get_db),
    policy_cache: PolicyCache = Depends(get_policy_cache),
):
    counts = run_orchestrator_pass(db, now=now, policy_cache=policy_cache)
    return {"status": "ok", **counts}
