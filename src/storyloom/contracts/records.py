"""Persisted record contracts.

These are strict contracts - all enum fields use proper enum types.
The repository layer handles string->enum conversion for DB reads.

The store is OUR data. If we read garbage from it, something catastrophic
happened - crash immediately rather than coerce.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storyloom.contracts.enums import (
    PipelineVersion,
    SessionPhase,
    SessionStatus,
    StageName,
    StageStatus,
)


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Validate that value is an instance of the expected enum type."""
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


@dataclass(frozen=True)
class NarrativeTemplate:
    """Ordered sequence of narrative step ids. Immutable reference data."""

    template_id: str
    steps: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(self.steps) < 1:
            raise ValueError(f"Narrative template '{self.template_id}' must have at least one step")

    @property
    def max_index(self) -> int:
        return len(self.steps) - 1


@dataclass(frozen=True)
class Session:
    """An interactive story session.

    Strict contract - phase and status must be enums.
    """

    session_id: str
    phase: SessionPhase
    arc_step_index: int
    narrative_template_id: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    selected_ending: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.phase, SessionPhase, "phase")
        _validate_enum(self.status, SessionStatus, "status")


@dataclass(frozen=True)
class StageProgress:
    completed: int = 0
    total: int = 0

    def __post_init__(self) -> None:
        if self.completed < 0 or self.total < 0:
            raise ValueError(f"progress counters must be >= 0, got {self.completed}/{self.total}")

    @property
    def percent(self) -> int:
        """Whole percent complete, 0 when total is unknown."""
        if self.total == 0:
            return 0
        return min(100, (self.completed * 100) // self.total)


@dataclass(frozen=True)
class StageRecord:
    """Persisted status of one stage of one artifact.

    Invariant: status=RATE_LIMITED implies retry_at is not None.
    """

    artifact_id: str
    stage: StageName
    status: StageStatus
    progress: StageProgress
    attempt_count: int
    updated_at: datetime
    retry_at: datetime | None = None
    last_error_message: str | None = None
    last_run_at: datetime | None = None
    last_completed_at: datetime | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _validate_enum(self.stage, StageName, "stage")
        _validate_enum(self.status, StageStatus, "status")
        if self.status == StageStatus.RATE_LIMITED and self.retry_at is None:
            raise ValueError(f"Stage {self.artifact_id}/{self.stage} is rate_limited without retry_at")


@dataclass(frozen=True)
class Artifact:
    """A story or storybook rendering whose generation stages are tracked."""

    artifact_id: str
    source_session_id: str
    pipeline_version: PipelineVersion
    stages: Mapping[StageName, StageRecord]
    created_at: datetime

    def __post_init__(self) -> None:
        _validate_enum(self.pipeline_version, PipelineVersion, "pipeline_version")

    def stage(self, name: StageName) -> StageRecord:
        """Get one stage record. KeyError if the stage is not in this artifact's pipeline."""
        return self.stages[name]

    def status_of(self, name: StageName) -> StageStatus:
        return self.stages[name].status


@dataclass(frozen=True)
class StageEvent:
    """One recorded status transition of a stage."""

    event_id: str
    artifact_id: str
    stage: StageName
    from_status: StageStatus
    to_status: StageStatus
    attempt: int
    recorded_at: datetime
    message: str | None = None
    actor: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.stage, StageName, "stage")
        _validate_enum(self.from_status, StageStatus, "from_status")
        _validate_enum(self.to_status, StageStatus, "to_status")


@dataclass(frozen=True)
class SessionEvent:
    """Phase transition or arc advance recorded against a session."""

    event_id: str
    session_id: str
    event: str
    attributes: Mapping[str, Any]
    recorded_at: datetime
