"""
Company policy service - read and update per-company tracking policy
"""
import logging
import threading
import time
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from app.models.policy import CompanyPolicyModel
from app.schemas.policy import CompanyPolicySettings
from app.services.audit_service import log_audit

_log = logging.getLogger(__name__)


def get_company_policy(db: Session, company_id: str) -> CompanyPolicySettings:
    """
    Get policy settings for a company

    Companies without a stored row run on the defaults.

    Args:
        db: Database session
        company_id: Company identifier

    Returns:
        CompanyPolicySettings
    """
    row = db.query(CompanyPolicyModel).filter(CompanyPolicyModel.company_id == company_id).first()
    if not row:
        return CompanyPolicySettings()
    return CompanyPolicySettings(**(row.settings_json or {}))


def upsert_company_policy(
    db: Session,
    company_id: str,
    policy: CompanyPolicySettings,
    actor_id: Optional[str] = None,
) -> CompanyPolicySettings:
    """
    Create or replace a company's policy settings

    Takes effect for transitions evaluated afterwards; recorded events and
    metrics are never rewritten.

    Args:
        db: Database session
        company_id: Company identifier
        policy: Complete new settings
        actor_id: ID of the admin updating the policy

    Returns:
        The stored settings
    """
    row = db.query(CompanyPolicyModel).filter(CompanyPolicyModel.company_id == company_id).first()
    previous = dict(row.settings_json or {}) if row else None
    data = policy.model_dump(mode="json")

    if not row:
        row = CompanyPolicyModel(company_id=company_id, settings_json=data, updated_by=actor_id)
        db.add(row)
    else:
        row.settings_json = data
        row.updated_by = actor_id
    db.commit()
    db.refresh(row)

    changed = sorted(k for k, v in data.items() if previous is None or previous.get(k) != v)
    _log.info("Policy for company %s updated (%s fields changed)", company_id, len(changed))
    log_audit(
        db=db,
        actor_id=actor_id or "system",
        action="POLICY_UPDATE",
        entity_type="company_policy",
        entity_id=company_id,
        meta={"changed_fields": changed},
    )
    return CompanyPolicySettings(**row.settings_json)


class PolicyCache:
    """
    Per-company policy cache with a time-to-live.

    Background loops evaluate many sessions of the same company per pass; the
    cache keeps that to one policy read per company per TTL.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, CompanyPolicySettings]] = {}
        self._lock = threading.Lock()

    def get(self, db: Session, company_id: str) -> CompanyPolicySettings:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(company_id)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                return entry[1]
        policy = get_company_policy(db, company_id)
        with self._lock:
            self._entries[company_id] = (now, policy)
        return policy

    def invalidate(self, company_id: Optional[str] = None) -> None:
        with self._lock:
            if company_id is None:
                self._entries.clear()
            else:
                self._entries.pop(company_id, None)
