# src/storyloom/engine/admin.py
"""Privileged stage override.

force_regenerate resets a stage to idle regardless of retry_at. It is a
separate object from the orchestrator so that nothing holding only the
orchestrator can reach it, and it refuses actors without the admin or
writer claim.

Scope: one stage of one artifact, plus (by default) every stage downstream
of it in the artifact's graph. Attempt counts restart, so the backoff
schedule starts over too. On v2 artifacts a ready finalize or printable
stage is built from everything upstream, so regenerating an upstream stage
without its dependents is refused there.
"""

from __future__ import annotations

from storyloom.contracts import Actor, AuthorizationError, PipelineVersion, PreconditionError, StageName, StageStatus
from storyloom.core.dag import graph_for
from storyloom.core.logging import get_logger
from storyloom.core.store import StageStatusStore
from storyloom.engine.clock import DEFAULT_CLOCK, Clock
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator

logger = get_logger(__name__)

# Pipelines whose finalize stage seals upstream output: a lone upstream
# regeneration under a ready finalize is refused
_SEALED_PIPELINES: frozenset[PipelineVersion] = frozenset({PipelineVersion.V2})


class AdminOverride:
    def __init__(
        self,
        store: StageStatusStore,
        orchestrator: GenerationPipelineOrchestrator,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._clock = clock or DEFAULT_CLOCK

    def force_regenerate(self, actor: Actor, artifact_id: str, stage: StageName, *, cascade: bool = True) -> list[StageName]:
        """Reset a stage (and its dependents) to idle, then evaluate the artifact.

        Args:
            actor: Authenticated caller; must hold the admin or writer claim
            artifact_id: Artifact to regenerate
            stage: Stage to reset
            cascade: Also reset every stage downstream of stage

        Returns:
            Stages whose records were reset, in topological order

        Raises:
            AuthorizationError: If actor is not privileged
            ArtifactNotFoundError: If the artifact does not exist
            PreconditionError: If the stage is not in the pipeline, any
                targeted stage is running, or cascade is off on a v2
                artifact with a ready downstream stage
        """
        if not actor.is_privileged:
            logger.warning("force_regenerate_denied", actor_id=actor.actor_id, artifact_id=artifact_id, stage=stage.value)
            raise AuthorizationError(f"Actor {actor.actor_id} may not force regeneration")

        artifact = self._store.get_artifact(artifact_id)
        graph = graph_for(artifact.pipeline_version)
        graph.require(stage)
        targets = [stage, *graph.descendants(stage)] if cascade else [stage]

        if not cascade and artifact.pipeline_version in _SEALED_PIPELINES:
            stale = [s for s in graph.descendants(stage) if artifact.status_of(s) == StageStatus.READY]
            if stale:
                raise PreconditionError(
                    f"Cannot regenerate {artifact_id}/{stage} alone: finalized stage(s) {[s.value for s in stale]} "
                    "are built from it and would be left stale; regenerate with cascade"
                )

        running = [s for s in targets if artifact.status_of(s) == StageStatus.RUNNING]
        if running:
            raise PreconditionError(
                f"Cannot regenerate {artifact_id}: stage(s) {[s.value for s in running]} are running and cannot be cancelled"
            )

        # Upstream first, so a concurrent evaluate can only re-run the root of the reset
        reset: list[StageName] = []
        for target in targets:
            if self._store.force_reset(artifact_id, target, actor_id=actor.actor_id, now=self._clock.now()):
                reset.append(target)

        logger.info(
            "force_regenerate",
            actor_id=actor.actor_id,
            artifact_id=artifact_id,
            stage=stage.value,
            cascade=cascade,
            reset=[s.value for s in reset],
        )
        self._orchestrator.evaluate(artifact_id)
        return reset
