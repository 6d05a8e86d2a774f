"""Repository layer for store records.

Handles the seam between SQLAlchemy rows (strings, naive timestamps) and
domain objects (strict enum types, UTC timestamps). This is NOT a trust
boundary - if the database has bad data, we crash.
"""

import json
from collections.abc import Iterable
from typing import Any

from sqlalchemy.engine import Row as SARow

from storyloom.contracts import (
    Artifact,
    NarrativeTemplate,
    PipelineVersion,
    Session,
    SessionEvent,
    SessionPhase,
    SessionStatus,
    StageEvent,
    StageName,
    StageProgress,
    StageRecord,
    StageStatus,
)
from storyloom.core.store._helpers import as_utc, as_utc_or_none, load_json_object


class NarrativeTemplateRepository:
    """Repository for NarrativeTemplate records."""

    def load(self, row: SARow[Any]) -> NarrativeTemplate:
        steps = json.loads(row.steps_json)
        if type(steps) is not list:
            raise ValueError(f"steps_json for template {row.template_id} must be a list, got {type(steps).__name__}")
        return NarrativeTemplate(template_id=row.template_id, steps=tuple(steps))


class SessionRepository:
    """Repository for Session records."""

    def load(self, row: SARow[Any]) -> Session:
        """Load Session from database row.

        Converts string fields to enums. Crashes on invalid data.
        """
        return Session(
            session_id=row.session_id,
            phase=SessionPhase(row.phase),
            arc_step_index=row.arc_step_index,
            narrative_template_id=row.narrative_template_id,
            status=SessionStatus(row.status),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            selected_ending=row.selected_ending,
        )


class StageRecordRepository:
    """Repository for StageRecord records."""

    def load(self, row: SARow[Any]) -> StageRecord:
        return StageRecord(
            artifact_id=row.artifact_id,
            stage=StageName(row.stage),
            status=StageStatus(row.status),
            progress=StageProgress(completed=row.progress_completed, total=row.progress_total),
            attempt_count=row.attempt_count,
            updated_at=as_utc(row.updated_at),
            retry_at=as_utc_or_none(row.retry_at),
            last_error_message=row.last_error_message,
            last_run_at=as_utc_or_none(row.last_run_at),
            last_completed_at=as_utc_or_none(row.last_completed_at),
            parameters=load_json_object(row.parameters_json, "parameters_json"),
        )


class ArtifactRepository:
    """Repository for Artifact records.

    An artifact is assembled from its header row plus one row per stage.
    """

    def __init__(self, stage_repo: StageRecordRepository | None = None) -> None:
        self._stage_repo = stage_repo or StageRecordRepository()

    def load(self, row: SARow[Any], stage_rows: Iterable[SARow[Any]]) -> Artifact:
        stages = {}
        for stage_row in stage_rows:
            record = self._stage_repo.load(stage_row)
            stages[record.stage] = record
        if not stages:
            raise ValueError(f"Artifact {row.artifact_id} has no stage records")
        return Artifact(
            artifact_id=row.artifact_id,
            source_session_id=row.source_session_id,
            pipeline_version=PipelineVersion(row.pipeline_version),
            stages=stages,
            created_at=as_utc(row.created_at),
        )


class StageEventRepository:
    """Repository for StageEvent records."""

    def load(self, row: SARow[Any]) -> StageEvent:
        return StageEvent(
            event_id=row.event_id,
            artifact_id=row.artifact_id,
            stage=StageName(row.stage),
            from_status=StageStatus(row.from_status),
            to_status=StageStatus(row.to_status),
            attempt=row.attempt,
            recorded_at=as_utc(row.recorded_at),
            message=row.message,
            actor=row.actor,
        )


class SessionEventRepository:
    """Repository for SessionEvent records."""

    def load(self, row: SARow[Any]) -> SessionEvent:
        return SessionEvent(
            event_id=row.event_id,
            session_id=row.session_id,
            event=row.event,
            attributes=load_json_object(row.attributes_json, "attributes_json"),
            recorded_at=as_utc(row.recorded_at),
        )
