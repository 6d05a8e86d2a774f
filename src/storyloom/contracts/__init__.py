"""Shared contracts for cross-boundary data types.

All dataclasses, enums, and exceptions that cross subsystem boundaries are
defined here. This package is a LEAF MODULE with no outbound dependencies to
core/engine/session.

Settings classes are NOT re-exported here - import them from
storyloom.core.config.
"""

from storyloom.contracts.enums import (
    FailureClassification,
    PipelineVersion,
    SessionPhase,
    SessionStatus,
    StageName,
    StageStatus,
)
from storyloom.contracts.errors import (
    ArtifactNotFoundError,
    AuthorizationError,
    OrchestrationInvariantError,
    PhaseError,
    PreconditionError,
    SessionNotFoundError,
    StoryloomError,
    TemplateConflictError,
    TemplateNotFoundError,
)
from storyloom.contracts.identity import Actor
from storyloom.contracts.outcomes import CollaboratorOutcome, SessionRequest, StageRequest
from storyloom.contracts.records import (
    Artifact,
    NarrativeTemplate,
    Session,
    SessionEvent,
    StageEvent,
    StageProgress,
    StageRecord,
)

__all__ = [
    "Actor",
    "Artifact",
    "ArtifactNotFoundError",
    "AuthorizationError",
    "CollaboratorOutcome",
    "FailureClassification",
    "NarrativeTemplate",
    "OrchestrationInvariantError",
    "PhaseError",
    "PipelineVersion",
    "PreconditionError",
    "Session",
    "SessionEvent",
    "SessionNotFoundError",
    "SessionPhase",
    "SessionRequest",
    "SessionStatus",
    "StageEvent",
    "StageName",
    "StageProgress",
    "StageRecord",
    "StageRequest",
    "StageStatus",
    "StoryloomError",
    "TemplateConflictError",
    "TemplateNotFoundError",
]
