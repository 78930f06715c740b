"""
Database-backed stores consumed by the engine: sessions, schedules, consent.

Sessions are persisted as a JSON document plus one row per event. Writes use
an optimistic version check; a writer holding an outdated snapshot gets a
ConflictError and must reload.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, SessionNotFoundError
from app.models.policy import TrackingConsentModel
from app.models.schedule_session import ScheduleSessionEventModel, ScheduleSessionModel
from app.schemas.policy import ConsentSettings, ConsentUpdate
from app.schemas.schedule import JobSite, Schedule
from app.schemas.schedule_session import (
    ScheduleSession,
    ScheduleSessionEvent,
    SessionStatus,
    TERMINAL_STATUSES,
)
from app.services import schedule_service
from app.services.audit_service import log_audit
from app.utils.datetime_utils import ensure_utc, now_utc

_log = logging.getLogger(__name__)


def _document(session: ScheduleSession) -> dict:
    return session.model_dump(mode="json")


def _event_row(session_id: str, sequence: int, event: ScheduleSessionEvent) -> ScheduleSessionEventModel:
    return ScheduleSessionEventModel(
        session_id=session_id,
        event_id=event.event_id,
        sequence=sequence,
        event_type=event.event_type,
        triggered_by=event.triggered_by,
        actor_id=event.actor_id,
        occurred_at=event.timestamp,
        details=event.details,
        meta_json=event.metadata,
    )


class SessionStore:
    """Load/save/create of ScheduleSession documents"""

    def __init__(self, db: Session):
        self.db = db

    def load(self, session_id: str) -> ScheduleSession:
        """
        Raises:
            SessionNotFoundError: If no session has this id
        """
        row = self.db.query(ScheduleSessionModel).filter(ScheduleSessionModel.id == session_id).first()
        if not row:
            raise SessionNotFoundError(f"Session {session_id} not found", context={"session_id": session_id})
        session = ScheduleSession.model_validate(row.document)
        return session.model_copy(update={"version": row.version})

    def find_by_occurrence(self, schedule_id: str, occurrence_start: datetime) -> Optional[ScheduleSession]:
        row = (
            self.db.query(ScheduleSessionModel)
            .filter(
                ScheduleSessionModel.schedule_id == schedule_id,
                ScheduleSessionModel.occurrence_start == ensure_utc(occurrence_start),
            )
            .first()
        )
        if not row:
            return None
        return ScheduleSession.model_validate(row.document).model_copy(update={"version": row.version})

    def create(self, session: ScheduleSession) -> ScheduleSession:
        """
        Persist a new session

        Raises:
            ConflictError: If a session already exists for this schedule occurrence
        """
        stored = session.model_copy(update={"version": 1})
        row = ScheduleSessionModel(
            id=stored.session_id,
            schedule_id=stored.schedule_id,
            occurrence_start=stored.occurrence_start,
            employee_id=stored.employee_id,
            company_id=stored.company_id,
            status=stored.status,
            version=stored.version,
            document=_document(stored),
        )
        self.db.add(row)
        for sequence, event in enumerate(stored.events):
            self.db.add(_event_row(stored.session_id, sequence, event))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(
                "A session already exists for this schedule occurrence",
                code=ConflictError.DUPLICATE_SESSION,
                context={
                    "schedule_id": stored.schedule_id,
                    "occurrence_start": stored.occurrence_start.isoformat(),
                },
            )
        _log.info("Session %s created for schedule %s", stored.session_id, stored.schedule_id)
        return stored

    def save(self, session: ScheduleSession, appended: Sequence[ScheduleSessionEvent]) -> ScheduleSession:
        """
        Write a transitioned snapshot if nobody else wrote since it was loaded

        Args:
            session: Snapshot returned by the state machine (carrying the loaded version)
            appended: Events the transition appended

        Returns:
            The stored snapshot with its new version

        Raises:
            ConflictError: If the stored version moved on since load
        """
        stored = session.model_copy(update={"version": session.version + 1})
        updated = (
            self.db.query(ScheduleSessionModel)
            .filter(
                ScheduleSessionModel.id == session.session_id,
                ScheduleSessionModel.version == session.version,
            )
            .update(
                {
                    ScheduleSessionModel.version: stored.version,
                    ScheduleSessionModel.status: stored.status,
                    ScheduleSessionModel.document: _document(stored),
                    ScheduleSessionModel.updated_at: now_utc(),
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            self.db.rollback()
            raise ConflictError(
                "Session was modified concurrently",
                code=ConflictError.STALE_SNAPSHOT,
                context={"session_id": session.session_id, "version": session.version},
            )
        first_sequence = len(stored.events) - len(appended)
        for offset, event in enumerate(appended):
            self.db.add(_event_row(stored.session_id, first_sequence + offset, event))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(
                "Session events were written concurrently",
                code=ConflictError.STALE_SNAPSHOT,
                context={"session_id": session.session_id},
            )
        return stored

    def list_active(self, company_id: Optional[str] = None) -> List[str]:
        """Ids of sessions not in a terminal status"""
        query = self.db.query(ScheduleSessionModel.id).filter(
            ScheduleSessionModel.status.notin_(list(TERMINAL_STATUSES))
        )
        if company_id is not None:
            query = query.filter(ScheduleSessionModel.company_id == company_id)
        return [row.id for row in query.order_by(ScheduleSessionModel.id).all()]

    def list_for_employee(self, employee_id: str, statuses: Optional[Sequence[SessionStatus]] = None) -> List[ScheduleSession]:
        query = self.db.query(ScheduleSessionModel).filter(ScheduleSessionModel.employee_id == employee_id)
        if statuses:
            query = query.filter(ScheduleSessionModel.status.in_(list(statuses)))
        rows = query.order_by(ScheduleSessionModel.occurrence_start).all()
        return [
            ScheduleSession.model_validate(row.document).model_copy(update={"version": row.version})
            for row in rows
        ]

    def list_events(self, session_id: str) -> List[ScheduleSessionEventModel]:
        return (
            self.db.query(ScheduleSessionEventModel)
            .filter(ScheduleSessionEventModel.session_id == session_id)
            .order_by(ScheduleSessionEventModel.sequence)
            .all()
        )


class ScheduleStore:
    """Read access to schedules and job sites"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, schedule_id: str) -> Optional[Schedule]:
        return schedule_service.get_schedule(self.db, schedule_id)

    def get_job_site(self, job_site_id: str) -> Optional[JobSite]:
        return schedule_service.get_job_site(self.db, job_site_id)

    def active_schedules_for(self, employee_id: str, window_start: datetime, window_end: datetime) -> List[Schedule]:
        return schedule_service.schedules_for_employee(self.db, employee_id, window_start, window_end)

    def occurrences_starting_between(self, window_start: datetime, window_end: datetime) -> List[Schedule]:
        return schedule_service.occurrences_starting_between(self.db, window_start, window_end)


class ConsentStore:
    """Employee tracking consent; employees without a row have not consented"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, employee_id: str) -> ConsentSettings:
        row = self.db.query(TrackingConsentModel).filter(TrackingConsentModel.employee_id == employee_id).first()
        if not row:
            return ConsentSettings(employee_id=employee_id)
        return ConsentSettings.model_validate(row)

    def set(self, employee_id: str, update: ConsentUpdate, actor_id: Optional[str] = None) -> ConsentSettings:
        row = self.db.query(TrackingConsentModel).filter(TrackingConsentModel.employee_id == employee_id).first()
        if not row:
            row = TrackingConsentModel(employee_id=employee_id)
            self.db.add(row)
        row.auto_tracking_enabled = update.auto_tracking_enabled
        row.consent_given = update.consent_given
        row.consent_version = update.consent_version
        row.consent_date = now_utc() if update.consent_given else None
        self.db.commit()
        self.db.refresh(row)
        log_audit(
            self.db,
            actor_id or employee_id,
            "CONSENT_GRANTED" if update.consent_given else "CONSENT_REVOKED",
            "tracking_consent",
            employee_id,
            {"auto_tracking_enabled": update.auto_tracking_enabled, "consent_version": update.consent_version},
        )
        return ConsentSettings.model_validate(row)
