# src/storyloom/engine/orchestrator.py
"""GenerationPipelineOrchestrator: drives artifacts through their stage graph.

Control loop:
1. evaluate(artifact) walks the graph in topological order
2. Every idle stage whose predecessors are all ready goes to attempt_trigger
3. The guard admits at most one caller (idle -> running, attempt + 1)
4. The winner submits the collaborator to the worker pool and returns
5. The completion callback writes the outcome with a guarded UPDATE
6. Every applied write re-invokes evaluate, cascading to dependents

Collaborator failures never escape. They become stage statuses:
success -> ready, rate_limited -> rate_limited (with retry_at),
error or exception -> error.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING, Any

from storyloom.contracts import (
    Artifact,
    CollaboratorOutcome,
    OrchestrationInvariantError,
    PhaseError,
    PipelineVersion,
    PreconditionError,
    SessionPhase,
    StageName,
    StageProgress,
    StageRequest,
    StageStatus,
)
from storyloom.core.dag import StageGraph, graph_for
from storyloom.core.logging import WORKER_THREAD_PREFIX, get_logger, stage_context
from storyloom.core.store import SessionStore, StageStatusStore
from storyloom.core.store._helpers import generate_id
from storyloom.engine.backoff import BackoffPolicy
from storyloom.engine.clock import DEFAULT_CLOCK, Clock
from storyloom.engine.collaborators import CollaboratorRegistry, StageCollaborator
from storyloom.engine.trigger_guard import StageTriggerGuard

if TYPE_CHECKING:
    from storyloom.session.phase_machine import SessionPhaseMachine

logger = get_logger(__name__)

# Phases in which an artifact may be created from a session
_ARTIFACT_PHASES: tuple[SessionPhase, ...] = (SessionPhase.CLOSING, SessionPhase.FINALIZED)


def is_complete(artifact: Artifact) -> bool:
    """True when every stage of the artifact's pipeline is ready.

    Terminal stages alone would miss an upstream stage that was force-reset
    after its dependents finished.
    """
    graph = graph_for(artifact.pipeline_version)
    return all(artifact.status_of(stage) == StageStatus.READY for stage in graph.stages)


class GenerationPipelineOrchestrator:
    """Event-driven stage scheduler for artifacts.

    Example:
        orchestrator = GenerationPipelineOrchestrator(
            stage_store, session_store, CollaboratorRegistry({StageName.PAGES: paginate, ...}),
            backoff=BackoffPolicy(),
        )
        artifact = orchestrator.create_artifact(session.session_id, PipelineVersion.V2)
        orchestrator.evaluate(artifact.artifact_id)
        orchestrator.drain(timeout=30)
    """

    def __init__(
        self,
        stage_store: StageStatusStore,
        session_store: SessionStore,
        collaborators: CollaboratorRegistry | Mapping[StageName, StageCollaborator],
        *,
        backoff: BackoffPolicy | None = None,
        clock: Clock | None = None,
        max_workers: int = 4,
        phase_machine: SessionPhaseMachine | None = None,
    ) -> None:
        self._clock = clock or DEFAULT_CLOCK
        self._stages = stage_store
        self._sessions = session_store
        self._collaborators = collaborators if isinstance(collaborators, CollaboratorRegistry) else CollaboratorRegistry(collaborators)
        self._backoff = backoff or BackoffPolicy(clock=self._clock)
        self._guard = StageTriggerGuard(stage_store, clock=self._clock)
        if phase_machine is None:
            # session imports engine.clock; import here to keep the packages acyclic
            from storyloom.session.phase_machine import SessionPhaseMachine

            phase_machine = SessionPhaseMachine(session_store, clock=self._clock)
        self._phase_machine = phase_machine

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=WORKER_THREAD_PREFIX)
        # Executions submitted but whose completion callback has not finished
        self._in_flight = 0
        self._in_flight_cond = threading.Condition()
        self._shutdown = False

    @property
    def guard(self) -> StageTriggerGuard:
        return self._guard

    # === Artifact lifecycle ===

    def create_artifact(
        self,
        session_id: str,
        pipeline_version: PipelineVersion,
        *,
        parameters: Mapping[StageName, Mapping[str, Any]] | None = None,
        artifact_id: str | None = None,
    ) -> Artifact:
        """Create an artifact for a session that has left drafting.

        All stages start idle. Call evaluate() to start generation.

        Raises:
            SessionNotFoundError: If the session does not exist
            PhaseError: If the session is still in intake or drafting
            PreconditionError: If a stage of the pipeline has no collaborator
        """
        session = self._sessions.get_session(session_id)
        if session.phase not in _ARTIFACT_PHASES:
            raise PhaseError(session_id, "create artifact for", tuple(p.value for p in _ARTIFACT_PHASES), session.phase.value)

        graph = graph_for(pipeline_version)
        missing = [stage for stage in graph.stages if stage not in self._collaborators]
        if missing:
            raise PreconditionError(f"No collaborator registered for {pipeline_version} stage(s): {[s.value for s in missing]}")

        artifact = self._stages.create_artifact(
            artifact_id or generate_id(),
            session_id,
            pipeline_version,
            graph.stages,
            now=self._clock.now(),
            parameters=parameters,
        )
        logger.info(
            "artifact_created",
            artifact_id=artifact.artifact_id,
            session_id=session_id,
            pipeline_version=pipeline_version.value,
        )
        return artifact

    # === Control loop ===

    def evaluate(self, artifact_id: str) -> list[StageName]:
        """Trigger every eligible stage of the artifact.

        A stage is eligible when it is idle and all of its predecessors are
        ready. Errored or rate-limited predecessors leave dependents idle.

        Returns:
            Stages this call admitted (empty when nothing was eligible or
            another caller won every admission)
        """
        artifact = self._stages.get_artifact(artifact_id)
        graph = graph_for(artifact.pipeline_version)
        admitted: list[StageName] = []
        for stage in graph.stages:
            if artifact.status_of(stage) != StageStatus.IDLE:
                continue
            if any(artifact.status_of(p) != StageStatus.READY for p in graph.predecessors(stage)):
                continue
            if self._trigger(artifact, graph, stage):
                admitted.append(stage)
        return admitted

    def attempt_trigger(self, artifact_id: str, stage: StageName) -> bool:
        """Try to start one stage.

        Returns:
            True if this call admitted the stage and submitted its collaborator.
            False when the stage is not idle, a predecessor is not ready, or
            another caller won the admission.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            PreconditionError: If the stage is not part of the artifact's pipeline
        """
        artifact = self._stages.get_artifact(artifact_id)
        graph = graph_for(artifact.pipeline_version)
        graph.require(stage)
        return self._trigger(artifact, graph, stage)

    def _trigger(self, artifact: Artifact, graph: StageGraph, stage: StageName) -> bool:
        if self._shutdown:
            logger.debug("stage_trigger_after_shutdown", artifact_id=artifact.artifact_id, stage=stage.value)
            return False
        if stage not in self._collaborators:
            logger.error("stage_collaborator_missing", artifact_id=artifact.artifact_id, stage=stage.value)
            return False

        record = self._guard.admit(artifact.artifact_id, stage, graph.predecessors(stage))
        if record is None:
            return False
        if record.status != StageStatus.RUNNING or record.attempt_count < 1:
            raise OrchestrationInvariantError(
                f"Admission of {artifact.artifact_id}/{stage} returned status {record.status} attempt {record.attempt_count}"
            )

        attempt = record.attempt_count
        request = StageRequest(
            artifact_id=artifact.artifact_id,
            session_id=artifact.source_session_id,
            stage=stage,
            attempt=attempt,
            stage_parameters=record.parameters,
            report_progress=partial(self.report_progress, artifact.artifact_id, stage, attempt),
        )
        collaborator = self._collaborators[stage]

        with self._in_flight_cond:
            self._in_flight += 1
        try:
            future = self._executor.submit(self._run_collaborator, collaborator, request)
        except RuntimeError as exc:
            # Executor shut down between the flag check and submit; nothing ran
            self._finish_in_flight()
            released = self._stages.release_admission(
                artifact.artifact_id, stage, attempt, now=self._clock.now(), message=f"orchestrator shut down: {exc}"
            )
            logger.info(
                "stage_admission_released", artifact_id=artifact.artifact_id, stage=stage.value, attempt=attempt, released=released
            )
            return False
        future.add_done_callback(partial(self._on_complete, artifact.artifact_id, stage, attempt))
        return True

    @staticmethod
    def _run_collaborator(collaborator: StageCollaborator, request: StageRequest) -> CollaboratorOutcome:
        """Worker-thread entry point; collaborator logging carries the stage identity."""
        with stage_context(request.artifact_id, request.stage, request.attempt):
            return collaborator(request)

    def _on_complete(self, artifact_id: str, stage: StageName, attempt: int, future: Future[CollaboratorOutcome]) -> None:
        """Completion callback. Runs on the worker thread (or inline if already done)."""
        try:
            with stage_context(artifact_id, stage, attempt):
                outcome = self._collect_outcome(future)
                applied = self._write_outcome(artifact_id, stage, attempt, outcome)
            # Dependents log under their own context
            if applied:
                self.evaluate(artifact_id)
                if outcome.ok:
                    self._check_completion(artifact_id)
        except Exception as exc:
            logger.error("stage_completion_failed", artifact_id=artifact_id, stage=stage.value, attempt=attempt, exc_info=True)
            self._fail_attempt(artifact_id, stage, attempt, exc)
        finally:
            self._finish_in_flight()

    def _collect_outcome(self, future: Future[CollaboratorOutcome]) -> CollaboratorOutcome:
        exc = future.exception()
        if exc is not None:
            logger.warning("stage_collaborator_raised", exc_info=exc)
            return CollaboratorOutcome.error(f"{type(exc).__name__}: {exc}")
        outcome = future.result()
        if not isinstance(outcome, CollaboratorOutcome):
            return CollaboratorOutcome.error(f"collaborator returned {type(outcome).__name__}, expected CollaboratorOutcome")
        return outcome

    def _fail_attempt(self, artifact_id: str, stage: StageName, attempt: int, exc: Exception) -> None:
        """Land a still-running attempt in error after its completion path raised.

        Guarded on the same attempt, so it is a no-op when the outcome was
        already written and the failure came from the cascade.
        """
        message = f"completion write failed: {type(exc).__name__}: {exc}"
        try:
            applied = self._stages.complete_attempt(
                artifact_id, stage, attempt, StageStatus.ERROR, now=self._clock.now(), message=message
            )
        except Exception:
            logger.critical("stage_stuck_running", artifact_id=artifact_id, stage=stage.value, attempt=attempt, exc_info=True)
            return
        if applied:
            logger.warning("stage_failed", artifact_id=artifact_id, stage=stage.value, attempt=attempt, message=message)

    def _write_outcome(self, artifact_id: str, stage: StageName, attempt: int, outcome: CollaboratorOutcome) -> bool:
        now = self._clock.now()
        kind = outcome.kind
        if kind == "success":
            applied = self._stages.complete_attempt(artifact_id, stage, attempt, StageStatus.READY, now=now, progress=outcome.progress)
        elif kind == "rate_limited":
            retry_at = self._retry_at(attempt, now, outcome.retry_hint_seconds)
            applied = self._stages.complete_attempt(
                artifact_id, stage, attempt, StageStatus.RATE_LIMITED, now=now, retry_at=retry_at, message=outcome.message
            )
        else:
            applied = self._stages.complete_attempt(artifact_id, stage, attempt, StageStatus.ERROR, now=now, message=outcome.message)

        if not applied:
            logger.warning("stage_completion_stale", artifact_id=artifact_id, stage=stage.value, attempt=attempt, outcome=kind)
            return False

        if kind == "success":
            logger.info(
                "stage_completed",
                artifact_id=artifact_id,
                stage=stage.value,
                attempt=attempt,
                completed=outcome.progress.completed,
                total=outcome.progress.total,
            )
        elif kind == "rate_limited":
            logger.info("stage_rate_limited", artifact_id=artifact_id, stage=stage.value, attempt=attempt, message=outcome.message)
        else:
            logger.warning("stage_failed", artifact_id=artifact_id, stage=stage.value, attempt=attempt, message=outcome.message)
        return True

    def _retry_at(self, attempt: int, now: datetime, hint_seconds: float | None) -> datetime:
        """Policy time, pushed later when the collaborator asks for a longer wait.

        A hint never pushes past the policy cap.
        """
        retry_at = self._backoff.next(attempt, now)
        if hint_seconds is not None:
            hinted = timedelta(seconds=min(hint_seconds, self._backoff.cap.total_seconds()))
            retry_at = max(retry_at, now + hinted)
        return retry_at

    def _check_completion(self, artifact_id: str) -> None:
        artifact = self._stages.get_artifact(artifact_id)
        if not is_complete(artifact):
            return
        logger.info("artifact_complete", artifact_id=artifact_id, pipeline_version=artifact.pipeline_version.value)
        if artifact.pipeline_version == PipelineVersion.V2:
            self._phase_machine.finalize_from_pipeline(artifact.source_session_id)

    # === Owner actions ===

    def retry_failed(self, artifact_id: str, stage: StageName) -> bool:
        """Retry a stage that ended in error (error -> idle, then evaluate).

        Does not touch rate-limited stages; those wait for the sweep.

        Returns:
            True if the stage was in error and has been reset
        """
        artifact = self._stages.get_artifact(artifact_id)
        graph_for(artifact.pipeline_version).require(stage)
        if not self._stages.reset_error(artifact_id, stage, now=self._clock.now()):
            return False
        logger.info("stage_retry_requested", artifact_id=artifact_id, stage=stage.value)
        self.evaluate(artifact_id)
        return True

    def report_progress(self, artifact_id: str, stage: StageName, attempt: int, completed: int, total: int) -> bool:
        """Record progress for a running attempt. Ignored once the attempt has finished."""
        return self._stages.update_progress(
            artifact_id, stage, attempt, StageProgress(completed=completed, total=total), now=self._clock.now()
        )

    def is_complete(self, artifact_id: str) -> bool:
        return is_complete(self._stages.get_artifact(artifact_id))

    # === Lifecycle ===

    def _finish_in_flight(self) -> None:
        with self._in_flight_cond:
            self._in_flight -= 1
            self._in_flight_cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._in_flight_cond:
            return self._in_flight

    def drain(self, timeout: float | None = None) -> bool:
        """Block until no stage execution (or its cascade) is in flight.

        Returns:
            True if idle, False if the timeout expired first
        """
        with self._in_flight_cond:
            return self._in_flight_cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting new stage executions.

        Args:
            wait: If True, wait for running collaborators to finish
        """
        self._shutdown = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> GenerationPipelineOrchestrator:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.shutdown(wait=True)
