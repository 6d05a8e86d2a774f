# src/storyloom/session/arc.py
"""ArcProgressionTracker: bounded position within a narrative template.

The index only moves forward, one step at a time, and never past the last
step of the template. Advancing at the last step is a successful no-op.
"""

from __future__ import annotations

from storyloom.contracts import NarrativeTemplate, PreconditionError, Session
from storyloom.core.logging import get_logger
from storyloom.core.store import SessionStore
from storyloom.engine.clock import DEFAULT_CLOCK, Clock

logger = get_logger(__name__)


class ArcProgressionTracker:
    def __init__(self, store: SessionStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or DEFAULT_CLOCK

    def advance(self, session: Session, template: NarrativeTemplate) -> Session:
        """Advance one step, clamped at template.max_index.

        The clamp runs inside a single UPDATE, so concurrent advances cannot
        overshoot. Returns the session as persisted after the write.
        """
        _check_template(session, template)
        updated = self._store.advance_arc(session.session_id, template.max_index, now=self._clock.now())
        if updated.arc_step_index == session.arc_step_index:
            logger.debug("arc_at_final_step", session_id=session.session_id, arc_step_index=updated.arc_step_index)
        else:
            logger.info(
                "arc_advanced",
                session_id=session.session_id,
                arc_step_index=updated.arc_step_index,
                step_id=template.steps[updated.arc_step_index],
            )
        return updated

    def current_step_id(self, session: Session, template: NarrativeTemplate) -> str:
        _check_template(session, template)
        return template.steps[session.arc_step_index]

    def is_at_final_step(self, session: Session, template: NarrativeTemplate) -> bool:
        _check_template(session, template)
        return session.arc_step_index == template.max_index


def _check_template(session: Session, template: NarrativeTemplate) -> None:
    if session.narrative_template_id != template.template_id:
        raise PreconditionError(
            f"Session {session.session_id} follows template {session.narrative_template_id}, not {template.template_id}"
        )
    if not 0 <= session.arc_step_index <= template.max_index:
        # Only reachable if the stored index was written outside this tracker
        raise PreconditionError(
            f"Session {session.session_id} arc index {session.arc_step_index} is outside template {template.template_id} "
            f"(max {template.max_index})"
        )
