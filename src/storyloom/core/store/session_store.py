"""SessionStore: sessions, narrative templates and the session event log."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Connection, case, select

from storyloom.contracts import (
    NarrativeTemplate,
    Session,
    SessionEvent,
    SessionNotFoundError,
    SessionPhase,
    SessionStatus,
    TemplateConflictError,
    TemplateNotFoundError,
)
from storyloom.core.store._database_ops import DatabaseOps
from storyloom.core.store._helpers import dump_json, generate_id, to_storage
from storyloom.core.store.database import StoryloomDB
from storyloom.core.store.repositories import NarrativeTemplateRepository, SessionEventRepository, SessionRepository
from storyloom.core.store.schema import narrative_templates_table, session_events_table, sessions_table

logger = logging.getLogger(__name__)

_sessions = sessions_table


class SessionStore:
    """Persistence for sessions and the templates that bound them."""

    def __init__(self, db: StoryloomDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._session_repo = SessionRepository()
        self._template_repo = NarrativeTemplateRepository()
        self._event_repo = SessionEventRepository()

    # === Templates ===

    def register_template(self, template: NarrativeTemplate, *, now: datetime) -> NarrativeTemplate:
        """Register a template once.

        Re-registering the same id with the same steps is a no-op.

        Raises:
            TemplateConflictError: If the id is registered with different steps
        """
        with self._db.connection() as conn:
            row = conn.execute(
                select(narrative_templates_table).where(narrative_templates_table.c.template_id == template.template_id)
            ).fetchone()
            if row is not None:
                existing = self._template_repo.load(row)
                if existing.steps != template.steps:
                    raise TemplateConflictError(template.template_id, existing.steps, template.steps)
                return existing
            conn.execute(
                narrative_templates_table.insert().values(
                    template_id=template.template_id,
                    steps_json=dump_json(list(template.steps)),
                    registered_at=to_storage(now),
                )
            )
        logger.debug("Registered narrative template %s with %d steps", template.template_id, len(template.steps))
        return template

    def get_template(self, template_id: str) -> NarrativeTemplate:
        """Raises TemplateNotFoundError if the id was never registered."""
        row = self._ops.execute_fetchone(
            select(narrative_templates_table).where(narrative_templates_table.c.template_id == template_id)
        )
        if row is None:
            raise TemplateNotFoundError(template_id)
        return self._template_repo.load(row)

    # === Sessions ===

    def create_session(self, template_id: str, *, now: datetime, session_id: str | None = None) -> Session:
        """Start a session at intake, step 0, active.

        Raises:
            TemplateNotFoundError: If the template is not registered
        """
        self.get_template(template_id)
        session_id = session_id or generate_id()
        now = to_storage(now)
        with self._db.connection() as conn:
            conn.execute(
                _sessions.insert().values(
                    session_id=session_id,
                    phase=SessionPhase.INTAKE.value,
                    arc_step_index=0,
                    narrative_template_id=template_id,
                    status=SessionStatus.ACTIVE.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            self._record_event(conn, session_id, "session_started", {"template_id": template_id}, now)
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Session:
        """Raises SessionNotFoundError if no such session exists."""
        row = self._ops.execute_fetchone(select(_sessions).where(_sessions.c.session_id == session_id))
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._session_repo.load(row)

    def advance_arc(self, session_id: str, max_index: int, *, now: datetime) -> Session:
        """Move the arc one step forward, clamped at max_index.

        The clamp is evaluated inside the UPDATE, so concurrent advances can
        never push the index past the end of the template.
        """
        if max_index < 0:
            raise ValueError(f"max_index must be >= 0, got {max_index}")
        now = to_storage(now)
        next_index = case(
            (_sessions.c.arc_step_index + 1 > max_index, max_index),
            else_=_sessions.c.arc_step_index + 1,
        )
        with self._db.connection() as conn:
            before = conn.execute(select(_sessions.c.arc_step_index).where(_sessions.c.session_id == session_id)).fetchone()
            if before is None:
                raise SessionNotFoundError(session_id)
            conn.execute(_sessions.update().where(_sessions.c.session_id == session_id).values(arc_step_index=next_index, updated_at=now))
            row = conn.execute(select(_sessions).where(_sessions.c.session_id == session_id)).one()
            if row.arc_step_index != before.arc_step_index:
                self._record_event(conn, session_id, "arc_advanced", {"from": before.arc_step_index, "to": row.arc_step_index}, now)
        return self._session_repo.load(row)

    def transition_phase(
        self,
        session_id: str,
        from_phase: SessionPhase,
        to_phase: SessionPhase,
        *,
        now: datetime,
        status: SessionStatus | None = None,
        selected_ending: str | None = None,
    ) -> bool:
        """Compare-and-set the session phase.

        Returns:
            True if the session was in from_phase and now is in to_phase
        """
        now = to_storage(now)
        values: dict[str, Any] = {"phase": to_phase.value, "updated_at": now}
        if status is not None:
            values["status"] = status.value
        if selected_ending is not None:
            values["selected_ending"] = selected_ending

        with self._db.connection() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.session_id == session_id, _sessions.c.phase == from_phase.value)
                .values(**values)
            )
            if result.rowcount != 1:
                return False
            attributes: dict[str, Any] = {"from": from_phase.value, "to": to_phase.value}
            if status is not None:
                attributes["status"] = status.value
            self._record_event(conn, session_id, "phase_changed", attributes, now)
        return True

    # === Events ===

    def record_event(self, session_id: str, event: str, attributes: Mapping[str, Any], *, now: datetime) -> None:
        with self._db.connection() as conn:
            self._record_event(conn, session_id, event, attributes, to_storage(now))

    def events(self, session_id: str) -> list[SessionEvent]:
        rows = self._ops.execute_fetchall(
            select(session_events_table)
            .where(session_events_table.c.session_id == session_id)
            .order_by(session_events_table.c.seq)
        )
        return [self._event_repo.load(row) for row in rows]

    def _record_event(self, conn: Connection, session_id: str, event: str, attributes: Mapping[str, Any], now: datetime) -> None:
        conn.execute(
            session_events_table.insert().values(
                event_id=generate_id(),
                session_id=session_id,
                event=event,
                attributes_json=dump_json(dict(attributes)),
                recorded_at=now,
            )
        )
