# tests/conftest.py
"""Shared test fixtures and helpers.

Fixtures:
- clock: MockClock pinned to 2024-01-01 12:00 UTC
- db: in-memory StoryloomDB (StaticPool, serialized transactions)
- stage_store / session_store: stores over db
- six_step_template: registered NarrativeTemplate with six steps
- make_session: factory that creates a session and walks it to a phase
- stage_collaborators: one FakeCollaborator per stage, all succeeding
- orchestrator: GenerationPipelineOrchestrator over the above

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from storyloom.contracts import (
    CollaboratorOutcome,
    NarrativeTemplate,
    Session,
    SessionPhase,
    SessionStatus,
    StageName,
)
from storyloom.core.store import SessionStore, StageStatusStore, StoryloomDB
from storyloom.engine.backoff import BackoffPolicy
from storyloom.engine.clock import MockClock
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator

# =============================================================================
# Hypothesis Profiles
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Collaborator Doubles
# =============================================================================


class FakeCollaborator:
    """Scripted collaborator double with a call counter.

    Returns the queued outcomes in order, then ``default`` forever. A queued
    exception instance is raised instead of returned. When ``gate`` is set,
    every call blocks until the gate opens, so tests can hold a stage in
    running while they race other callers against it.

    Works for both stage and session collaborators; the request is recorded
    untouched.
    """

    def __init__(
        self,
        *outcomes: CollaboratorOutcome | BaseException,
        default: CollaboratorOutcome | None = None,
        gate: threading.Event | None = None,
        on_call: Callable[[Any], None] | None = None,
    ) -> None:
        self._outcomes: deque[CollaboratorOutcome | BaseException] = deque(outcomes)
        self._default = default or CollaboratorOutcome.success()
        self._lock = threading.Lock()
        self.gate = gate
        self.on_call = on_call
        self.requests: list[Any] = []

    def push(self, *outcomes: CollaboratorOutcome | BaseException) -> None:
        """Queue more scripted outcomes (usable after the orchestrator is built)."""
        with self._lock:
            self._outcomes.extend(outcomes)

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)

    def __call__(self, request: Any) -> CollaboratorOutcome:
        with self._lock:
            self.requests.append(request)
            outcome = self._outcomes.popleft() if self._outcomes else self._default
        if self.on_call is not None:
            self.on_call(request)
        if self.gate is not None and not self.gate.wait(timeout=10):
            raise TimeoutError("test gate never opened")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


# =============================================================================
# Store Fixtures
# =============================================================================

SIX_STEPS = ("opening", "meet-friend", "problem", "attempt", "twist", "resolution")


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def db() -> Iterator[StoryloomDB]:
    database = StoryloomDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def stage_store(db: StoryloomDB) -> StageStatusStore:
    return StageStatusStore(db)


@pytest.fixture
def session_store(db: StoryloomDB) -> SessionStore:
    return SessionStore(db)


@pytest.fixture
def six_step_template(session_store: SessionStore, clock: MockClock) -> NarrativeTemplate:
    return session_store.register_template(NarrativeTemplate("classic-six", SIX_STEPS), now=clock.now())


_PHASE_PATH: tuple[SessionPhase, ...] = (
    SessionPhase.INTAKE,
    SessionPhase.DRAFTING,
    SessionPhase.CLOSING,
    SessionPhase.FINALIZED,
)


@pytest.fixture
def make_session(
    session_store: SessionStore,
    six_step_template: NarrativeTemplate,
    clock: MockClock,
) -> Callable[..., Session]:
    """Create a session and move it straight to the requested phase.

    Writes through the store, bypassing collaborators. A session placed past
    drafting also gets its arc moved to the final step.
    """

    def _make(phase: SessionPhase = SessionPhase.INTAKE, session_id: str | None = None) -> Session:
        session = session_store.create_session(six_step_template.template_id, now=clock.now(), session_id=session_id)
        target = _PHASE_PATH.index(phase)
        for step in range(target):
            current, following = _PHASE_PATH[step], _PHASE_PATH[step + 1]
            if following == SessionPhase.CLOSING:
                for _ in range(six_step_template.max_index):
                    session_store.advance_arc(session.session_id, six_step_template.max_index, now=clock.now())
            status = SessionStatus.COMPLETED if following == SessionPhase.FINALIZED else None
            assert session_store.transition_phase(session.session_id, current, following, now=clock.now(), status=status)
        return session_store.get_session(session.session_id)

    return _make


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def stage_collaborators() -> dict[StageName, FakeCollaborator]:
    return {stage: FakeCollaborator() for stage in StageName}


@pytest.fixture
def orchestrator(
    stage_store: StageStatusStore,
    session_store: SessionStore,
    stage_collaborators: dict[StageName, FakeCollaborator],
    clock: MockClock,
) -> Iterator[GenerationPipelineOrchestrator]:
    orch = GenerationPipelineOrchestrator(
        stage_store,
        session_store,
        stage_collaborators,
        backoff=BackoffPolicy(clock=clock),
        clock=clock,
        max_workers=4,
    )
    yield orch
    orch.shutdown(wait=True)
