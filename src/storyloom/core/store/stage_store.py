"""StageStatusStore: durable per-stage status with compare-and-set writes.

Every mutation of a stage record is one guarded UPDATE whose WHERE clause
names the state the caller believes the row is in. The rowcount tells the
caller whether it won. The matching stage_events row is written in the same
transaction, so the history never disagrees with the record.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Connection, and_, func, select

from storyloom.contracts import (
    Artifact,
    ArtifactNotFoundError,
    PipelineVersion,
    PreconditionError,
    StageEvent,
    StageName,
    StageProgress,
    StageRecord,
    StageStatus,
)
from storyloom.core.store._database_ops import DatabaseOps
from storyloom.core.store._helpers import dump_json, generate_id, to_storage
from storyloom.core.store.database import StoryloomDB
from storyloom.core.store.repositories import ArtifactRepository, StageEventRepository, StageRecordRepository
from storyloom.core.store.schema import artifacts_table, stage_events_table, stage_records_table

logger = logging.getLogger(__name__)

_records = stage_records_table


def _stage_row(artifact_id: str, stage: StageName) -> Any:
    return and_(_records.c.artifact_id == artifact_id, _records.c.stage == stage.value)


class StageStatusStore:
    """Persisted status of every stage of every artifact.

    Example:
        store = StageStatusStore(db)
        store.create_artifact("a1", "s1", PipelineVersion.LEGACY, graph.stages, now=now)
        record = store.admit("a1", StageName.PAGES, requires_ready=(), now=now)
        if record is not None:
            store.complete_attempt("a1", StageName.PAGES, record.attempt_count, StageStatus.READY, now=now)
    """

    def __init__(self, db: StoryloomDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._stage_repo = StageRecordRepository()
        self._artifact_repo = ArtifactRepository(self._stage_repo)
        self._event_repo = StageEventRepository()

    # === Artifacts ===

    def create_artifact(
        self,
        artifact_id: str,
        source_session_id: str,
        pipeline_version: PipelineVersion,
        stages: Sequence[StageName],
        *,
        now: datetime,
        parameters: Mapping[StageName, Mapping[str, Any]] | None = None,
    ) -> Artifact:
        """Insert an artifact and one idle record per stage of its pipeline."""
        now = to_storage(now)
        parameters = parameters or {}
        unknown = set(parameters) - set(stages)
        if unknown:
            raise PreconditionError(f"Parameters given for stages outside the {pipeline_version} pipeline: {sorted(unknown)}")

        with self._db.connection() as conn:
            conn.execute(
                artifacts_table.insert().values(
                    artifact_id=artifact_id,
                    source_session_id=source_session_id,
                    pipeline_version=pipeline_version.value,
                    created_at=now,
                )
            )
            conn.execute(
                _records.insert(),
                [
                    {
                        "artifact_id": artifact_id,
                        "stage": stage.value,
                        "status": StageStatus.IDLE.value,
                        "progress_completed": 0,
                        "progress_total": 0,
                        "attempt_count": 0,
                        "parameters_json": dump_json(dict(parameters.get(stage, {}))),
                        "updated_at": now,
                    }
                    for stage in stages
                ],
            )
        logger.debug("Created artifact %s (%s) with stages %s", artifact_id, pipeline_version, [s.value for s in stages])
        return self.get_artifact(artifact_id)

    def get_artifact(self, artifact_id: str) -> Artifact:
        """Load an artifact with all of its stage records.

        Raises:
            ArtifactNotFoundError: If no such artifact exists
        """
        with self._db.connection() as conn:
            header = conn.execute(select(artifacts_table).where(artifacts_table.c.artifact_id == artifact_id)).fetchone()
            if header is None:
                raise ArtifactNotFoundError(artifact_id)
            stage_rows = conn.execute(select(_records).where(_records.c.artifact_id == artifact_id)).fetchall()
        return self._artifact_repo.load(header, stage_rows)

    def artifacts_for_session(self, session_id: str) -> list[Artifact]:
        rows = self._ops.execute_fetchall(
            select(artifacts_table.c.artifact_id)
            .where(artifacts_table.c.source_session_id == session_id)
            .order_by(artifacts_table.c.created_at, artifacts_table.c.artifact_id)
        )
        return [self.get_artifact(row.artifact_id) for row in rows]

    def get_stage(self, artifact_id: str, stage: StageName) -> StageRecord:
        """Load one stage record.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            PreconditionError: If the stage is not part of the artifact's pipeline
        """
        row = self._ops.execute_fetchone(select(_records).where(_stage_row(artifact_id, stage)))
        if row is None:
            exists = self._ops.execute_fetchone(select(artifacts_table.c.artifact_id).where(artifacts_table.c.artifact_id == artifact_id))
            if exists is None:
                raise ArtifactNotFoundError(artifact_id)
            raise PreconditionError(f"Artifact {artifact_id} has no '{stage}' stage")
        return self._stage_repo.load(row)

    # === Transitions ===

    def admit(
        self,
        artifact_id: str,
        stage: StageName,
        *,
        requires_ready: Sequence[StageName] = (),
        now: datetime,
    ) -> StageRecord | None:
        """Compare-and-set idle -> running.

        The WHERE clause also requires every stage in requires_ready to be
        ready, so the dependency check and the claim are one atomic statement.
        Clears retry and error fields, zeroes progress, bumps attempt_count and
        stamps last_run_at.

        Returns:
            The running record if this caller won the admission, else None
        """
        now = to_storage(now)
        conditions = [_stage_row(artifact_id, stage), _records.c.status == StageStatus.IDLE.value]
        if requires_ready:
            upstream = _records.alias("upstream")
            ready_count = (
                select(func.count())
                .select_from(upstream)
                .where(
                    upstream.c.artifact_id == artifact_id,
                    upstream.c.stage.in_([s.value for s in requires_ready]),
                    upstream.c.status == StageStatus.READY.value,
                )
                .scalar_subquery()
            )
            conditions.append(ready_count == len(set(requires_ready)))

        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(*conditions)
                .values(
                    status=StageStatus.RUNNING.value,
                    attempt_count=_records.c.attempt_count + 1,
                    progress_completed=0,
                    progress_total=0,
                    retry_at=None,
                    last_error_message=None,
                    last_run_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(select(_records).where(_stage_row(artifact_id, stage))).one()
            self._record_event(conn, artifact_id, stage, StageStatus.IDLE, StageStatus.RUNNING, row.attempt_count, now)
        return self._stage_repo.load(row)

    def complete_attempt(
        self,
        artifact_id: str,
        stage: StageName,
        attempt: int,
        status: StageStatus,
        *,
        now: datetime,
        progress: StageProgress | None = None,
        retry_at: datetime | None = None,
        message: str | None = None,
    ) -> bool:
        """Write the outcome of one attempt.

        Guarded on status == running AND attempt_count == attempt, so a
        completion for an attempt that is no longer current matches no row.

        Returns:
            True if the write applied, False if the completion was stale
        """
        now = to_storage(now)
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == StageStatus.READY:
            values.update(retry_at=None, last_error_message=None, last_completed_at=now)
            if progress is not None:
                values.update(progress_completed=progress.completed, progress_total=progress.total)
        elif status == StageStatus.RATE_LIMITED:
            if retry_at is None or to_storage(retry_at) <= now:
                raise ValueError(f"rate_limited write for {artifact_id}/{stage} needs retry_at after {now.isoformat()}, got {retry_at!r}")
            values.update(retry_at=to_storage(retry_at), last_error_message=message)
        elif status == StageStatus.ERROR:
            values.update(retry_at=None, last_error_message=message)
        else:
            raise ValueError(f"An attempt cannot complete into '{status}'")

        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(
                    _stage_row(artifact_id, stage),
                    _records.c.status == StageStatus.RUNNING.value,
                    _records.c.attempt_count == attempt,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                return False
            self._record_event(conn, artifact_id, stage, StageStatus.RUNNING, status, attempt, now, message=message)
        return True

    def update_progress(self, artifact_id: str, stage: StageName, attempt: int, progress: StageProgress, *, now: datetime) -> bool:
        """Record intermediate progress while the same attempt is still running."""
        now = to_storage(now)
        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(
                    _stage_row(artifact_id, stage),
                    _records.c.status == StageStatus.RUNNING.value,
                    _records.c.attempt_count == attempt,
                )
                .values(progress_completed=progress.completed, progress_total=progress.total, updated_at=now)
            )
            return bool(result.rowcount == 1)

    def release_admission(
        self, artifact_id: str, stage: StageName, attempt: int, *, now: datetime, message: str | None = None
    ) -> bool:
        """Compare-and-set running -> idle for an attempt whose collaborator never started.

        Guarded like complete_attempt. The attempt count is kept; the next
        admission is a new attempt.

        Returns:
            True if the admission was handed back, False if the attempt was no longer current
        """
        now = to_storage(now)
        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(
                    _stage_row(artifact_id, stage),
                    _records.c.status == StageStatus.RUNNING.value,
                    _records.c.attempt_count == attempt,
                )
                .values(status=StageStatus.IDLE.value, updated_at=now)
            )
            if result.rowcount != 1:
                return False
            self._record_event(conn, artifact_id, stage, StageStatus.RUNNING, StageStatus.IDLE, attempt, now, message=message)
        return True

    def due_rate_limited(self, now: datetime) -> list[StageRecord]:
        """All rate_limited records whose retry_at has passed, oldest first."""
        rows = self._ops.execute_fetchall(
            select(_records)
            .where(_records.c.status == StageStatus.RATE_LIMITED.value, _records.c.retry_at <= to_storage(now))
            .order_by(_records.c.retry_at, _records.c.artifact_id, _records.c.stage)
        )
        return [self._stage_repo.load(row) for row in rows]

    def release_rate_limited(self, record: StageRecord, *, now: datetime) -> bool:
        """Compare-and-set rate_limited -> idle for a record seen by the sweep.

        Guarded on the retry_at the sweep observed, so a record that was reset
        and rate limited again in between is left alone.
        """
        if record.retry_at is None:
            raise ValueError(f"{record.artifact_id}/{record.stage} has no retry_at to release")
        now = to_storage(now)
        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(
                    _stage_row(record.artifact_id, record.stage),
                    _records.c.status == StageStatus.RATE_LIMITED.value,
                    _records.c.retry_at == to_storage(record.retry_at),
                )
                .values(status=StageStatus.IDLE.value, retry_at=None, updated_at=now)
            )
            if result.rowcount != 1:
                return False
            self._record_event(
                conn, record.artifact_id, record.stage, StageStatus.RATE_LIMITED, StageStatus.IDLE, record.attempt_count, now
            )
        return True

    def reset_error(self, artifact_id: str, stage: StageName, *, now: datetime) -> bool:
        """Compare-and-set error -> idle. The attempt count is kept."""
        now = to_storage(now)
        with self._db.connection() as conn:
            result = conn.execute(
                _records.update()
                .where(_stage_row(artifact_id, stage), _records.c.status == StageStatus.ERROR.value)
                .values(status=StageStatus.IDLE.value, updated_at=now)
            )
            if result.rowcount != 1:
                return False
            attempt = conn.execute(select(_records.c.attempt_count).where(_stage_row(artifact_id, stage))).scalar_one()
            self._record_event(conn, artifact_id, stage, StageStatus.ERROR, StageStatus.IDLE, attempt, now)
        return True

    def force_reset(self, artifact_id: str, stage: StageName, *, actor_id: str, now: datetime) -> bool:
        """Reset a stage to a fresh idle record regardless of retry_at.

        Clears retry and error fields, progress and attempt count.

        Returns:
            True if the record changed, False if it was already a fresh idle record

        Raises:
            PreconditionError: If the stage is running (there is no cancel)
        """
        now = to_storage(now)
        with self._db.connection() as conn:
            row = conn.execute(select(_records).where(_stage_row(artifact_id, stage))).fetchone()
            if row is None:
                raise PreconditionError(f"Artifact {artifact_id} has no '{stage}' stage")
            current = self._stage_repo.load(row)
            if current.status == StageStatus.RUNNING:
                raise PreconditionError(f"Stage {artifact_id}/{stage} is running (attempt {current.attempt_count}) and cannot be reset")
            if current.status == StageStatus.IDLE and current.attempt_count == 0 and current.last_error_message is None:
                return False

            result = conn.execute(
                _records.update()
                .where(
                    _stage_row(artifact_id, stage),
                    _records.c.status == current.status.value,
                    _records.c.attempt_count == current.attempt_count,
                )
                .values(
                    status=StageStatus.IDLE.value,
                    attempt_count=0,
                    progress_completed=0,
                    progress_total=0,
                    retry_at=None,
                    last_error_message=None,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise PreconditionError(f"Stage {artifact_id}/{stage} changed while being reset; retry the override")
            self._record_event(
                conn,
                artifact_id,
                stage,
                current.status,
                StageStatus.IDLE,
                current.attempt_count,
                now,
                message="forced regeneration",
                actor=actor_id,
            )
        return True

    # === History ===

    def events(self, artifact_id: str, stage: StageName | None = None) -> list[StageEvent]:
        """Status transitions in the order they were written."""
        query = select(stage_events_table).where(stage_events_table.c.artifact_id == artifact_id)
        if stage is not None:
            query = query.where(stage_events_table.c.stage == stage.value)
        rows = self._ops.execute_fetchall(query.order_by(stage_events_table.c.seq))
        return [self._event_repo.load(row) for row in rows]

    def _record_event(
        self,
        conn: Connection,
        artifact_id: str,
        stage: StageName,
        from_status: StageStatus,
        to_status: StageStatus,
        attempt: int,
        now: datetime,
        *,
        message: str | None = None,
        actor: str | None = None,
    ) -> None:
        conn.execute(
            stage_events_table.insert().values(
                event_id=generate_id(),
                artifact_id=artifact_id,
                stage=stage.value,
                from_status=from_status.value,
                to_status=to_status.value,
                attempt=attempt,
                message=message,
                actor=actor,
                recorded_at=now,
            )
        )
