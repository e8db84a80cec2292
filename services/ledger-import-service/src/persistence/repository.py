"""Import session data access helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from persistence.models import ImportAuditEvent, ImportSession
from wizard import ImportWizard, Transition, WizardState


class ImportSessionRepository:
    """Thin repository that stores wizard snapshots and their audit events."""

    def __init__(self, db: Session):
        self._db = db

    def create_session(
        self,
        session_id: str,
        *,
        source_ip: str | None = None,
    ) -> ImportSession:
        wizard = ImportWizard()
        record = ImportSession(
            id=session_id,
            state=wizard.state.value,
            submitting=False,
            snapshot=wizard.to_snapshot(),
        )
        self._db.add(record)
        self._record_event(
            action="session_created",
            session=record,
            source_ip=source_ip,
            from_state=None,
            to_state=WizardState.UPLOAD.value,
            details=None,
        )
        self._db.commit()
        self._db.refresh(record)
        return record

    def get_session(self, session_id: str) -> ImportSession | None:
        return self._db.get(ImportSession, session_id)

    def load_wizard(self, session: ImportSession) -> ImportWizard:
        return ImportWizard.from_snapshot(session.snapshot)

    def save_wizard(
        self,
        session: ImportSession,
        wizard: ImportWizard,
        transition: Transition | None = None,
        *,
        action: str | None = None,
        source_ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ImportSession:
        """
        Persist the wizard and, when an action is given, append one audit event.

        The event's from/to states come from `transition` when present; otherwise the
        session's stored state is recorded on both sides.
        """

        previous_state = session.state
        session.snapshot = wizard.to_snapshot()
        session.state = wizard.state.value
        session.submitting = wizard.submitting
        session.file_name = wizard.upload.file_name if wizard.upload else None
        session.file_sha256 = wizard.upload.file_sha256 if wizard.upload else None
        self._db.add(session)

        event_action = action or (transition.action.value if transition else None)
        if event_action:
            self._record_event(
                action=event_action,
                session=session,
                source_ip=source_ip,
                from_state=transition.from_state.value if transition else previous_state,
                to_state=transition.to_state.value if transition else session.state,
                details=details,
            )
        self._db.commit()
        self._db.refresh(session)
        return session

    def list_events(self, session: ImportSession) -> list[ImportAuditEvent]:
        return list(session.audit_events)

    def _record_event(
        self,
        *,
        action: str,
        session: ImportSession,
        source_ip: str | None,
        from_state: str | None,
        to_state: str | None,
        details: dict[str, Any] | None,
    ) -> None:
        event = ImportAuditEvent(
            session_id=session.id,
            action=action,
            source_ip=source_ip,
            from_state=from_state,
            to_state=to_state,
            details=details,
        )
        self._db.add(event)
