"""Tests for StoryloomRuntime wiring."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from storyloom.contracts import CollaboratorOutcome, PipelineVersion, SessionPhase, StageName, StageStatus, TemplateConflictError
from storyloom.core.config import StoryloomSettings
from storyloom.core.store import StoryloomDB
from storyloom.engine.clock import MockClock
from storyloom.runtime import StoryloomRuntime
from tests.conftest import FakeCollaborator


def _settings(**overrides: object) -> StoryloomSettings:
    base: dict[str, object] = {
        "narrative_templates": {"bedtime": ["opening", "journey", "home"]},
        "backoff": {"initial_delay_seconds": 60, "max_delay_seconds": 600},
        "sweep": {"enabled": False},
    }
    base.update(overrides)
    return StoryloomSettings(**base)  # type: ignore[arg-type]


@pytest.fixture
def collaborators() -> dict[StageName, FakeCollaborator]:
    return {stage: FakeCollaborator() for stage in StageName}


def test_from_settings_registers_templates(collaborators: dict[StageName, FakeCollaborator], clock: MockClock) -> None:
    with StoryloomRuntime.from_settings(_settings(), collaborators, clock=clock, db=StoryloomDB.in_memory()) as runtime:
        assert runtime.sessions.get_template("bedtime").steps == ("opening", "journey", "home")
        assert set(runtime.templates) == {"bedtime"}
        assert not runtime.sweeper.running


def test_templates_file_is_merged(
    tmp_path: Path, collaborators: dict[StageName, FakeCollaborator], clock: MockClock
) -> None:
    templates_file = tmp_path / "templates.yaml"
    templates_file.write_text("space:\n  steps:\n    - id: launch\n    - id: landing\n")
    settings = _settings(narrative_templates_file=templates_file)
    with StoryloomRuntime.from_settings(settings, collaborators, clock=clock, db=StoryloomDB.in_memory()) as runtime:
        assert runtime.sessions.get_template("space").steps == ("launch", "landing")
        assert set(runtime.templates) == {"bedtime", "space"}


def test_reseeding_with_changed_steps_conflicts(collaborators: dict[StageName, FakeCollaborator], clock: MockClock) -> None:
    db = StoryloomDB.in_memory()
    runtime = StoryloomRuntime.from_settings(_settings(), collaborators, clock=clock, db=db)
    try:
        with pytest.raises(TemplateConflictError):
            StoryloomRuntime.from_settings(
                _settings(narrative_templates={"bedtime": ["opening", "home"]}), collaborators, clock=clock, db=db
            )
    finally:
        runtime.close()


def test_backoff_settings_reach_the_orchestrator(
    collaborators: dict[StageName, FakeCollaborator], clock: MockClock
) -> None:
    collaborators[StageName.PAGES].push(CollaboratorOutcome.rate_limited("429"))
    with StoryloomRuntime.from_settings(_settings(), collaborators, clock=clock, db=StoryloomDB.in_memory()) as runtime:
        session = runtime.sessions.create_session("bedtime", now=clock.now())
        runtime.phases.submit_intake(session.session_id, FakeCollaborator())
        for _ in range(2):
            runtime.phases.advance_and_beat(session.session_id, FakeCollaborator())
        runtime.phases.select_ending(session.session_id, FakeCollaborator())
        assert runtime.sessions.get_session(session.session_id).phase == SessionPhase.CLOSING

        artifact = runtime.orchestrator.create_artifact(session.session_id, PipelineVersion.LEGACY)
        runtime.orchestrator.evaluate(artifact.artifact_id)
        assert runtime.orchestrator.drain(timeout=10)

        record = runtime.stages.get_stage(artifact.artifact_id, StageName.PAGES)
        assert record.status == StageStatus.RATE_LIMITED
        assert record.retry_at == clock.now() + timedelta(seconds=60)


def test_start_runs_sweeper_when_enabled(collaborators: dict[StageName, FakeCollaborator], clock: MockClock) -> None:
    settings = _settings(sweep={"enabled": True, "interval_seconds": 5})
    runtime = StoryloomRuntime.from_settings(settings, collaborators, clock=clock, db=StoryloomDB.in_memory())
    runtime.start()
    try:
        assert runtime.sweeper.running
    finally:
        runtime.close()
    assert not runtime.sweeper.running
