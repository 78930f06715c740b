"""
Company policy and tracking consent endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_policy_cache, get_tracking_coordinator
from app.schemas.policy import CompanyPolicySettings, ConsentSettings, ConsentUpdate
from app.services.policy_service import PolicyCache, get_company_policy, upsert_company_policy
from app.services.session_store import ConsentStore
from app.services.tracking_coordinator import TrackingCoordinator

router = APIRouter()
consents_router = APIRouter()


@router.get("/{company_id}", response_model=CompanyPolicySettings)
async def get_policy_endpoint(company_id: str, db: Session = Depends(get_db)):
    """Company policy (defaults when none is stored)"""
    return get_company_policy(db, company_id)


@router.put("/{company_id}", response_model=CompanyPolicySettings)
async def update_policy_endpoint(
    company_id: str,
    policy: CompanyPolicySettings,
    actor_id: Optional[str] = Query(None, description="Admin making the change"),
    db: Session = Depends(get_db),
    policy_cache: PolicyCache = Depends(get_policy_cache),
):
    """Replace the company policy; applies to transitions evaluated afterwards"""
    stored = upsert_company_policy(db, company_id, policy, actor_id=actor_id)
    policy_cache.invalidate(company_id)
    return stored


@consents_router.get("/{employee_id}", response_model=ConsentSettings)
async def get_consent_endpoint(employee_id: str, db: Session = Depends(get_db)):
    return ConsentStore(db).get(employee_id)


@consents_router.put("/{employee_id}", response_model=ConsentSettings)
async def update_consent_endpoint(
    employee_id: str,
    update: ConsentUpdate,
    db: Session = Depends(get_db),
    coordinator: TrackingCoordinator = Depends(get_tracking_coordinator),
):
    """Grant or revoke background tracking consent; revoking stops tracking at once"""
    consent = ConsentStore(db).set(employee_id, update)
    if not consent.tracking_permitted:
        coordinator.revoke_consent(employee_id)
    return consent
