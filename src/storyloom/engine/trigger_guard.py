# src/storyloom/engine/trigger_guard.py
"""StageTriggerGuard: at most one in-flight execution per (artifact, stage).

Any number of observers may ask to trigger the same stage at the same time.
Admission is a single compare-and-set on the persisted status, so exactly one
of them wins. Losers get False and do nothing else.
"""

from __future__ import annotations

from collections.abc import Sequence

from storyloom.contracts import StageName, StageRecord
from storyloom.core.logging import get_logger
from storyloom.core.store import StageStatusStore
from storyloom.engine.clock import DEFAULT_CLOCK, Clock

logger = get_logger(__name__)


class StageTriggerGuard:
    def __init__(self, store: StageStatusStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or DEFAULT_CLOCK

    def try_admit(self, artifact_id: str, stage: StageName, requires_ready: Sequence[StageName] = ()) -> bool:
        """Claim the stage for one execution.

        Returns:
            True if the stage moved idle -> running for this caller
        """
        return self.admit(artifact_id, stage, requires_ready) is not None

    def admit(self, artifact_id: str, stage: StageName, requires_ready: Sequence[StageName] = ()) -> StageRecord | None:
        """Like try_admit, but hands the winner its running record (with the new attempt number)."""
        record = self._store.admit(artifact_id, stage, requires_ready=requires_ready, now=self._clock.now())
        if record is None:
            logger.debug("stage_admission_rejected", artifact_id=artifact_id, stage=stage.value)
            return None
        logger.info("stage_admitted", artifact_id=artifact_id, stage=stage.value, attempt=record.attempt_count)
        return record
