"""Collaborator request and outcome contracts.

These types answer: "What did a generation collaborator produce?"

Collaborators are opaque. They receive a request, do their long-running work,
and report exactly one outcome. Use the factory methods to build outcomes:

    CollaboratorOutcome.success(completed=12, total=12)
    CollaboratorOutcome.rate_limited("429 RESOURCE_EXHAUSTED", retry_hint_seconds=900)
    CollaboratorOutcome.error("model returned no pages")
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from storyloom.contracts.enums import FailureClassification, SessionPhase, StageName
from storyloom.contracts.records import StageProgress


def _ignore_progress(completed: int, total: int) -> None:
    return None


@dataclass(frozen=True)
class CollaboratorOutcome:
    """Result of a collaborator call.

    IMPORTANT: ok=True implies classification is None. ok=False implies a
    classification is set; the orchestrator maps it straight to a status and
    never re-derives it from the message.
    """

    ok: bool
    progress: StageProgress = field(default_factory=StageProgress)
    classification: FailureClassification | None = None
    message: str | None = None
    retry_hint_seconds: float | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.ok and self.classification is not None:
            raise ValueError("successful outcome cannot carry a failure classification")
        if not self.ok and self.classification is None:
            raise ValueError("failed outcome must carry a failure classification")
        if self.retry_hint_seconds is not None and not math.isfinite(self.retry_hint_seconds):
            raise ValueError(f"retry_hint_seconds must be finite, got {self.retry_hint_seconds}")
        if self.retry_hint_seconds is not None and self.retry_hint_seconds < 0:
            raise ValueError(f"retry_hint_seconds must be >= 0, got {self.retry_hint_seconds}")

    @classmethod
    def success(cls, completed: int = 1, total: int = 1, payload: Mapping[str, Any] | None = None) -> CollaboratorOutcome:
        return cls(ok=True, progress=StageProgress(completed=completed, total=total), payload=dict(payload or {}))

    @classmethod
    def rate_limited(cls, message: str | None = None, retry_hint_seconds: float | None = None) -> CollaboratorOutcome:
        return cls(
            ok=False,
            classification=FailureClassification.RATE_LIMITED,
            message=message,
            retry_hint_seconds=retry_hint_seconds,
        )

    @classmethod
    def error(cls, message: str) -> CollaboratorOutcome:
        return cls(ok=False, classification=FailureClassification.ERROR, message=message)

    @property
    def kind(self) -> Literal["success", "rate_limited", "error"]:
        if self.ok:
            return "success"
        if self.classification == FailureClassification.RATE_LIMITED:
            return "rate_limited"
        return "error"


@dataclass(frozen=True)
class StageRequest:
    """Input handed to a stage collaborator.

    report_progress(completed, total) may be called from the collaborator's
    thread while it works; writes are ignored once the attempt is no longer
    running.
    """

    artifact_id: str
    session_id: str
    stage: StageName
    attempt: int
    stage_parameters: Mapping[str, Any] = field(default_factory=dict)
    report_progress: Callable[[int, int], None] = field(default=_ignore_progress, repr=False, compare=False)


@dataclass(frozen=True)
class SessionRequest:
    """Input handed to a session-phase collaborator (intake, beat, ending, compile)."""

    session_id: str
    phase: SessionPhase
    step_id: str
    arc_step_index: int
    payload: Mapping[str, Any] = field(default_factory=dict)
