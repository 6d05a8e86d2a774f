# src/storyloom/engine/status.py
"""Read-only status views for observers.

rate_limited is a friendly waiting state with an estimated retry time.
error is terminal until someone explicitly retries it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from storyloom.contracts import Artifact, PipelineVersion, StageName, StageRecord, StageStatus
from storyloom.core.dag import graph_for

RATE_LIMITED_HEADLINE = "The Story Wizard is taking a nap! We'll try again soon."
DEFAULT_ERROR_HEADLINE = "An error occurred"


@dataclass(frozen=True)
class StageStatusView:
    stage: StageName
    status: StageStatus
    headline: str
    percent: int
    attempt_count: int
    retry_at: datetime | None = None
    retry_in_seconds: int | None = None
    needs_retry_action: bool = False
    error_message: str | None = None


@dataclass(frozen=True)
class ArtifactStatusView:
    artifact_id: str
    pipeline_version: PipelineVersion
    stages: tuple[StageStatusView, ...]
    complete: bool

    def stage(self, name: StageName) -> StageStatusView:
        for view in self.stages:
            if view.stage == name:
                return view
        raise KeyError(name)


def describe_stage(record: StageRecord, now: datetime) -> StageStatusView:
    status = record.status
    progress = record.progress

    if status == StageStatus.RUNNING:
        headline = f"Processing {progress.completed} of {progress.total}..." if progress.total else "Processing..."
    elif status == StageStatus.READY:
        headline = "Complete!"
    elif status == StageStatus.RATE_LIMITED:
        headline = RATE_LIMITED_HEADLINE
    elif status == StageStatus.ERROR:
        headline = record.last_error_message or DEFAULT_ERROR_HEADLINE
    else:
        headline = "Waiting to start..."

    retry_in: int | None = None
    if status == StageStatus.RATE_LIMITED and record.retry_at is not None:
        retry_in = max(0, int((record.retry_at - now).total_seconds()))

    return StageStatusView(
        stage=record.stage,
        status=status,
        headline=headline,
        percent=100 if status == StageStatus.READY else progress.percent,
        attempt_count=record.attempt_count,
        retry_at=record.retry_at if status == StageStatus.RATE_LIMITED else None,
        retry_in_seconds=retry_in,
        needs_retry_action=status == StageStatus.ERROR,
        error_message=record.last_error_message if status == StageStatus.ERROR else None,
    )


def describe_artifact(artifact: Artifact, now: datetime) -> ArtifactStatusView:
    """Per-stage views in pipeline order, plus whether the artifact is complete."""
    graph = graph_for(artifact.pipeline_version)
    views = tuple(describe_stage(artifact.stage(stage), now) for stage in graph.stages)
    return ArtifactStatusView(
        artifact_id=artifact.artifact_id,
        pipeline_version=artifact.pipeline_version,
        stages=views,
        complete=all(v.status == StageStatus.READY for v in views),
    )
