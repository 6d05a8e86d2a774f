# src/storyloom/session/phase_machine.py
"""SessionPhaseMachine: the coarse session lifecycle.

    intake -> drafting -> closing -> finalized

Linear, no skipping, no going back. Each operation checks the current phase
first and raises PhaseError on a mismatch. The transition itself is a
compare-and-set on the persisted phase and only happens after the matching
collaborator reports success. Failed collaborator replies (including
exceptions) are returned to the caller and leave the phase unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from storyloom.contracts import (
    CollaboratorOutcome,
    NarrativeTemplate,
    PhaseError,
    PreconditionError,
    Session,
    SessionPhase,
    SessionRequest,
    SessionStatus,
)
from storyloom.core.logging import get_logger
from storyloom.core.store import SessionStore
from storyloom.engine.clock import DEFAULT_CLOCK, Clock
from storyloom.engine.collaborators import SessionCollaborator
from storyloom.session.arc import ArcProgressionTracker

logger = get_logger(__name__)


@dataclass(frozen=True)
class BeatResult:
    """What one advance-and-beat call did."""

    step_id: str
    arc_step_index: int
    at_final_step: bool
    outcome: CollaboratorOutcome


class SessionPhaseMachine:
    def __init__(
        self,
        store: SessionStore,
        *,
        clock: Clock | None = None,
        tracker: ArcProgressionTracker | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or DEFAULT_CLOCK
        self._tracker = tracker or ArcProgressionTracker(store, clock=self._clock)

    @property
    def tracker(self) -> ArcProgressionTracker:
        return self._tracker

    def submit_intake(
        self,
        session_id: str,
        collaborator: SessionCollaborator,
        payload: Mapping[str, Any] | None = None,
    ) -> CollaboratorOutcome:
        """Send the intake reply. The first success moves intake -> drafting."""
        session, template = self._load(session_id, "submit intake for", SessionPhase.INTAKE)
        outcome = self._call(collaborator, session, template, payload)
        if outcome.ok:
            self._transition(session, SessionPhase.INTAKE, SessionPhase.DRAFTING)
        return outcome

    def advance_and_beat(
        self,
        session_id: str,
        collaborator: SessionCollaborator,
        payload: Mapping[str, Any] | None = None,
    ) -> BeatResult:
        """Advance the arc one step (clamped) and generate the beat for that step.

        The beat collaborator's outcome does not gate the advance: the arc
        position is a bound on how far the story may go, not a record of
        successful beats.
        """
        session, template = self._load(session_id, "advance", SessionPhase.DRAFTING)
        session = self._tracker.advance(session, template)
        outcome = self._call(collaborator, session, template, payload)
        return BeatResult(
            step_id=self._tracker.current_step_id(session, template),
            arc_step_index=session.arc_step_index,
            at_final_step=self._tracker.is_at_final_step(session, template),
            outcome=outcome,
        )

    def select_ending(
        self,
        session_id: str,
        collaborator: SessionCollaborator,
        payload: Mapping[str, Any] | None = None,
    ) -> CollaboratorOutcome:
        """Choose the ending. Requires the arc at its final step; success moves drafting -> closing.

        The ending text is taken from the outcome payload's "ending" key, if any.

        Raises:
            PhaseError: If the session is not drafting
            PreconditionError: If the arc has not reached the final step
        """
        session, template = self._load(session_id, "select an ending for", SessionPhase.DRAFTING)
        if not self._tracker.is_at_final_step(session, template):
            raise PreconditionError(
                f"Cannot select an ending for session {session_id}: arc is at step "
                f"{session.arc_step_index} of {template.max_index}"
            )
        outcome = self._call(collaborator, session, template, payload)
        if outcome.ok:
            ending = outcome.payload.get("ending")
            self._transition(
                session,
                SessionPhase.DRAFTING,
                SessionPhase.CLOSING,
                selected_ending=None if ending is None else str(ending),
            )
        return outcome

    def compile(
        self,
        session_id: str,
        collaborator: SessionCollaborator,
        payload: Mapping[str, Any] | None = None,
    ) -> CollaboratorOutcome:
        """Compile the finished story. Success moves closing -> finalized and completes the session."""
        session, template = self._load(session_id, "compile", SessionPhase.CLOSING)
        outcome = self._call(collaborator, session, template, payload)
        if outcome.ok:
            self._transition(session, SessionPhase.CLOSING, SessionPhase.FINALIZED, status=SessionStatus.COMPLETED)
        return outcome

    def finalize_from_pipeline(self, session_id: str) -> bool:
        """Finalize a session whose v2 artifact has every stage ready.

        Returns:
            True if this call moved the session closing -> finalized. False if
            the session was not in closing (already finalized, or not there yet).
        """
        session = self._store.get_session(session_id)
        if session.phase != SessionPhase.CLOSING:
            logger.debug("finalize_skipped", session_id=session_id, phase=session.phase.value)
            return False
        return self._transition(session, SessionPhase.CLOSING, SessionPhase.FINALIZED, status=SessionStatus.COMPLETED)

    # === Internals ===

    def _load(self, session_id: str, operation: str, required: SessionPhase) -> tuple[Session, NarrativeTemplate]:
        session = self._store.get_session(session_id)
        template = self._store.get_template(session.narrative_template_id)
        if session.phase != required:
            raise PhaseError(session_id, operation, (required.value,), session.phase.value)
        return session, template

    def _call(
        self,
        collaborator: SessionCollaborator,
        session: Session,
        template: NarrativeTemplate,
        payload: Mapping[str, Any] | None,
    ) -> CollaboratorOutcome:
        request = SessionRequest(
            session_id=session.session_id,
            phase=session.phase,
            step_id=self._tracker.current_step_id(session, template),
            arc_step_index=session.arc_step_index,
            payload=dict(payload or {}),
        )
        try:
            outcome = collaborator(request)
        except Exception as exc:
            # A raising collaborator is reported as an error outcome
            logger.warning("session_collaborator_raised", session_id=session.session_id, phase=session.phase.value, exc_info=True)
            return CollaboratorOutcome.error(f"{type(exc).__name__}: {exc}")
        if not outcome.ok:
            logger.info("session_collaborator_failed", session_id=session.session_id, phase=session.phase.value, outcome=outcome.kind)
        return outcome

    def _transition(
        self,
        session: Session,
        from_phase: SessionPhase,
        to_phase: SessionPhase,
        *,
        status: SessionStatus | None = None,
        selected_ending: str | None = None,
    ) -> bool:
        changed = self._store.transition_phase(
            session.session_id,
            from_phase,
            to_phase,
            now=self._clock.now(),
            status=status,
            selected_ending=selected_ending,
        )
        if changed:
            logger.info("session_phase_changed", session_id=session.session_id, from_phase=from_phase.value, to_phase=to_phase.value)
        else:
            logger.warning("session_phase_change_lost", session_id=session.session_id, from_phase=from_phase.value, to_phase=to_phase.value)
        return changed
