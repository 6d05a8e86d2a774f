# src/storyloom/engine/sweep.py
"""RetrySweeper: returns rate-limited stages to idle once retry_at passes.

Event-driven evaluation never fires for a stage that is just waiting out a
backoff, so a timed sweep is the only thing that un-sticks it. Each release
is a compare-and-set on (status, retry_at), then the artifact is evaluated
once so the ordinary admission path re-runs the stage.
"""

from __future__ import annotations

import threading
from datetime import datetime

from storyloom.contracts import StageName
from storyloom.core.logging import get_logger
from storyloom.core.store import StageStatusStore
from storyloom.engine.clock import DEFAULT_CLOCK, Clock
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator

logger = get_logger(__name__)


class RetrySweeper:
    def __init__(
        self,
        store: StageStatusStore,
        orchestrator: GenerationPipelineOrchestrator,
        *,
        clock: Clock | None = None,
        interval_seconds: float = 60.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self._store = store
        self._orchestrator = orchestrator
        self._clock = clock or DEFAULT_CLOCK
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self, now: datetime | None = None) -> list[tuple[str, StageName]]:
        """Release every rate-limited stage whose retry_at <= now, then evaluate.

        Returns:
            (artifact_id, stage) pairs this sweep released
        """
        now = now if now is not None else self._clock.now()
        released: list[tuple[str, StageName]] = []
        for record in self._store.due_rate_limited(now):
            if self._store.release_rate_limited(record, now=now):
                released.append((record.artifact_id, record.stage))
                logger.info(
                    "stage_retry_released",
                    artifact_id=record.artifact_id,
                    stage=record.stage.value,
                    attempt=record.attempt_count,
                )

        for artifact_id in dict.fromkeys(artifact_id for artifact_id, _ in released):
            self._orchestrator.evaluate(artifact_id)
        return released

    # === Background thread ===

    def start(self) -> None:
        """Run sweep() every interval_seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("RetrySweeper already started")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="storyloom-retry-sweep", daemon=True)
        self._thread.start()
        logger.debug("retry_sweep_started", interval_seconds=self._interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:
                # Next tick retries; a failed sweep changes nothing it did not commit
                logger.error("retry_sweep_failed", exc_info=True)
