"""Session lifecycle: phase machine and bounded narrative arc."""

from storyloom.session.arc import ArcProgressionTracker
from storyloom.session.phase_machine import BeatResult, SessionPhaseMachine

__all__ = [
    "ArcProgressionTracker",
    "BeatResult",
    "SessionPhaseMachine",
]
