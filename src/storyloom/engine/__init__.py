# src/storyloom/engine/__init__.py
"""Generation engine: stage scheduling with durable status.

This module provides the execution engine for storyloom artifacts:
- GenerationPipelineOrchestrator: evaluates the stage graph and runs collaborators
- StageTriggerGuard: at most one in-flight execution per stage
- BackoffPolicy: retry_at for rate-limited stages (tenacity wait strategy)
- RetrySweeper: time-driven release of elapsed rate limits
- AdminOverride: privileged force-regenerate

Example:
    from storyloom.core.store import SessionStore, StageStatusStore, StoryloomDB
    from storyloom.engine import GenerationPipelineOrchestrator

    db = StoryloomDB.from_url("sqlite:///state/storyloom.db")
    orchestrator = GenerationPipelineOrchestrator(
        StageStatusStore(db), SessionStore(db), collaborators
    )
    artifact = orchestrator.create_artifact(session_id, PipelineVersion.V2)
    orchestrator.evaluate(artifact.artifact_id)
"""

from storyloom.engine.admin import AdminOverride
from storyloom.engine.backoff import BackoffPolicy
from storyloom.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from storyloom.engine.collaborators import (
    CollaboratorNotRegisteredError,
    CollaboratorRegistry,
    SessionCollaborator,
    StageCollaborator,
    classify_provider_error,
    outcome_from_provider_error,
)
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator, is_complete
from storyloom.engine.status import ArtifactStatusView, StageStatusView, describe_artifact
from storyloom.engine.sweep import RetrySweeper
from storyloom.engine.trigger_guard import StageTriggerGuard

__all__ = [
    "DEFAULT_CLOCK",
    "AdminOverride",
    "ArtifactStatusView",
    "BackoffPolicy",
    "Clock",
    "CollaboratorNotRegisteredError",
    "CollaboratorRegistry",
    "GenerationPipelineOrchestrator",
    "MockClock",
    "RetrySweeper",
    "SessionCollaborator",
    "StageCollaborator",
    "StageStatusView",
    "StageTriggerGuard",
    "SystemClock",
    "classify_provider_error",
    "describe_artifact",
    "is_complete",
    "outcome_from_provider_error",
]
