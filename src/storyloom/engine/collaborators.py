# src/storyloom/engine/collaborators.py
"""Collaborator protocols and registry.

A collaborator is any callable that performs one long-running generation
call and reports a CollaboratorOutcome. The orchestrator looks stage
collaborators up by StageName; the phase machine receives its session
collaborators per call.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from typing import Protocol

from storyloom.contracts import CollaboratorOutcome, FailureClassification, SessionRequest, StageName, StageRequest


class StageCollaborator(Protocol):
    def __call__(self, request: StageRequest) -> CollaboratorOutcome: ...


class SessionCollaborator(Protocol):
    def __call__(self, request: SessionRequest) -> CollaboratorOutcome: ...


class CollaboratorNotRegisteredError(KeyError):
    """No collaborator registered for a stage the pipeline needs."""

    def __init__(self, stage: StageName) -> None:
        self.stage = stage
        super().__init__(f"No collaborator registered for stage '{stage}'")


class CollaboratorRegistry(Mapping[StageName, StageCollaborator]):
    """Immutable mapping of stage name to collaborator."""

    def __init__(self, collaborators: Mapping[StageName, StageCollaborator] | None = None) -> None:
        self._collaborators = dict(collaborators or {})

    def __getitem__(self, stage: StageName) -> StageCollaborator:
        try:
            return self._collaborators[stage]
        except KeyError:
            raise CollaboratorNotRegisteredError(stage) from None

    def __iter__(self) -> Iterator[StageName]:
        return iter(self._collaborators)

    def __len__(self) -> int:
        return len(self._collaborators)

    def with_stage(self, stage: StageName, collaborator: StageCollaborator) -> CollaboratorRegistry:
        """Return a copy with one more (or one replaced) collaborator."""
        return CollaboratorRegistry({**self._collaborators, stage: collaborator})


# Provider messages that mean "try again later". Matched case-insensitively.
_TRANSIENT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"RESOURCE_EXHAUSTED",
        r"\b429\b",
        r"quota",
        r"rate[\s_-]?limit",
        r"too many requests",
        r"timed?[\s_-]?out",
    )
)


def classify_provider_error(message: str) -> FailureClassification:
    """Map a provider error message to a failure classification.

    For collaborators that wrap a provider SDK. The orchestrator never calls
    this; it trusts the classification on the outcome.
    """
    if any(p.search(message) for p in _TRANSIENT_PATTERNS):
        return FailureClassification.RATE_LIMITED
    return FailureClassification.ERROR


def outcome_from_provider_error(message: str, retry_hint_seconds: float | None = None) -> CollaboratorOutcome:
    """Build the failed outcome for a provider error message."""
    if classify_provider_error(message) == FailureClassification.RATE_LIMITED:
        return CollaboratorOutcome.rate_limited(message, retry_hint_seconds=retry_hint_seconds)
    return CollaboratorOutcome.error(message)
