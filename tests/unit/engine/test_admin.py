"""Tests for AdminOverride.force_regenerate."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from storyloom.contracts import (
    Actor,
    AuthorizationError,
    CollaboratorOutcome,
    PipelineVersion,
    PreconditionError,
    Session,
    SessionPhase,
    StageName,
    StageStatus,
)
from storyloom.core.store import StageStatusStore
from storyloom.engine.admin import AdminOverride
from storyloom.engine.clock import MockClock
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator
from tests.conftest import FakeCollaborator

ADMIN = Actor("ops-1", is_admin=True)
WRITER = Actor("writer-7", is_writer=True)
PARENT = Actor("parent-42")


@pytest.fixture
def admin(stage_store: StageStatusStore, orchestrator: GenerationPipelineOrchestrator, clock: MockClock) -> AdminOverride:
    return AdminOverride(stage_store, orchestrator, clock=clock)


@pytest.fixture
def finished_artifact(orchestrator: GenerationPipelineOrchestrator, make_session: Callable[..., Session]) -> str:
    session = make_session(SessionPhase.CLOSING)
    artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.LEGACY)
    orchestrator.evaluate(artifact.artifact_id)
    assert orchestrator.drain(timeout=10)
    assert orchestrator.is_complete(artifact.artifact_id)
    return artifact.artifact_id


def test_unprivileged_actor_is_refused(
    admin: AdminOverride, stage_store: StageStatusStore, finished_artifact: str
) -> None:
    with pytest.raises(AuthorizationError, match="parent-42"):
        admin.force_regenerate(PARENT, finished_artifact, StageName.IMAGES)
    assert stage_store.events(finished_artifact, StageName.IMAGES)[-1].to_status == StageStatus.READY


@pytest.mark.parametrize("actor", [ADMIN, WRITER], ids=["admin", "writer"])
def test_cascade_resets_stage_and_dependents(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_store: StageStatusStore,
    stage_collaborators: dict[StageName, FakeCollaborator],
    finished_artifact: str,
    actor: Actor,
) -> None:
    reset = admin.force_regenerate(actor, finished_artifact, StageName.IMAGES)
    assert reset == [StageName.IMAGES, StageName.AUDIO]
    assert orchestrator.drain(timeout=10)

    assert stage_collaborators[StageName.PAGES].calls == 1
    assert stage_collaborators[StageName.IMAGES].calls == 2
    assert stage_collaborators[StageName.AUDIO].calls == 2
    assert orchestrator.is_complete(finished_artifact)

    forced = [e for e in stage_store.events(finished_artifact, StageName.IMAGES) if e.message == "forced regeneration"]
    assert len(forced) == 1
    assert forced[0].actor == actor.actor_id
    assert forced[0].from_status == StageStatus.READY


def test_without_cascade_only_target_reruns(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_collaborators: dict[StageName, FakeCollaborator],
    finished_artifact: str,
) -> None:
    assert admin.force_regenerate(ADMIN, finished_artifact, StageName.IMAGES, cascade=False) == [StageName.IMAGES]
    assert orchestrator.drain(timeout=10)
    assert stage_collaborators[StageName.IMAGES].calls == 2
    assert stage_collaborators[StageName.AUDIO].calls == 1


def test_v2_refuses_lone_upstream_regeneration_under_ready_finalize(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_store: StageStatusStore,
    stage_collaborators: dict[StageName, FakeCollaborator],
    make_session: Callable[..., Session],
) -> None:
    session = make_session(SessionPhase.CLOSING)
    artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.V2)
    orchestrator.evaluate(artifact.artifact_id)
    assert orchestrator.drain(timeout=10)
    assert orchestrator.is_complete(artifact.artifact_id)

    with pytest.raises(PreconditionError, match=r"\['finalize', 'printable'\].*regenerate with cascade"):
        admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.IMAGES, cascade=False)
    assert stage_store.get_stage(artifact.artifact_id, StageName.IMAGES).attempt_count == 1

    # The terminal stage has nothing downstream to go stale
    assert admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.PRINTABLE, cascade=False) == [StageName.PRINTABLE]
    assert orchestrator.drain(timeout=10)
    assert stage_collaborators[StageName.PRINTABLE].calls == 2

    assert admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.IMAGES) == [
        StageName.IMAGES,
        StageName.FINALIZE,
        StageName.PRINTABLE,
    ]
    assert orchestrator.drain(timeout=10)
    assert stage_collaborators[StageName.IMAGES].calls == 2
    assert stage_collaborators[StageName.FINALIZE].calls == 2
    assert stage_collaborators[StageName.PRINTABLE].calls == 3
    assert orchestrator.is_complete(artifact.artifact_id)


def test_overrides_pending_retry_and_restarts_attempts(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_store: StageStatusStore,
    stage_collaborators: dict[StageName, FakeCollaborator],
    make_session: Callable[..., Session],
) -> None:
    stage_collaborators[StageName.PAGES].push(CollaboratorOutcome.rate_limited("429"))
    session = make_session(SessionPhase.CLOSING)
    artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.LEGACY)
    orchestrator.evaluate(artifact.artifact_id)
    assert orchestrator.drain(timeout=10)
    assert stage_store.get_stage(artifact.artifact_id, StageName.PAGES).status == StageStatus.RATE_LIMITED

    # retry_at is still in the future; the override ignores it
    assert admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.PAGES) == [StageName.PAGES]
    assert orchestrator.drain(timeout=10)

    record = stage_store.get_stage(artifact.artifact_id, StageName.PAGES)
    assert record.status == StageStatus.READY
    assert record.attempt_count == 1
    assert record.retry_at is None
    assert orchestrator.is_complete(artifact.artifact_id)


def test_running_target_is_refused(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_store: StageStatusStore,
    stage_collaborators: dict[StageName, FakeCollaborator],
    make_session: Callable[..., Session],
) -> None:
    gate = threading.Event()
    stage_collaborators[StageName.PAGES].gate = gate
    session = make_session(SessionPhase.CLOSING)
    artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.LEGACY)
    orchestrator.evaluate(artifact.artifact_id)
    try:
        with pytest.raises(PreconditionError, match="are running"):
            admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.PAGES)
    finally:
        gate.set()
    assert orchestrator.drain(timeout=10)
    assert stage_store.get_stage(artifact.artifact_id, StageName.PAGES).attempt_count == 1


def test_stage_outside_pipeline(admin: AdminOverride, finished_artifact: str) -> None:
    with pytest.raises(PreconditionError, match="not part of the legacy pipeline"):
        admin.force_regenerate(ADMIN, finished_artifact, StageName.PRINTABLE)


def test_fresh_stages_are_not_reported(
    admin: AdminOverride,
    orchestrator: GenerationPipelineOrchestrator,
    stage_collaborators: dict[StageName, FakeCollaborator],
    make_session: Callable[..., Session],
) -> None:
    stage_collaborators[StageName.PAGES].push(CollaboratorOutcome.error("bad outline"))
    session = make_session(SessionPhase.CLOSING)
    artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.LEGACY)
    orchestrator.evaluate(artifact.artifact_id)
    assert orchestrator.drain(timeout=10)

    # images and audio never ran, so only pages changes
    assert admin.force_regenerate(ADMIN, artifact.artifact_id, StageName.PAGES) == [StageName.PAGES]
    assert orchestrator.drain(timeout=10)
    assert orchestrator.is_complete(artifact.artifact_id)
