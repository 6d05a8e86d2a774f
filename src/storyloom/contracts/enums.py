"""All status codes, phases, and kinds used across subsystem boundaries.

Every value here is persisted as its string form. Reading an unknown string
back from the database crashes at the repository layer; there is no "unknown"
member to fall back on.
"""

from enum import StrEnum


class StageName(StrEnum):
    """A unit of the generation DAG.

    Stored in database (stage_records.stage).
    """

    PAGES = "pages"
    IMAGES = "images"
    AUDIO = "audio"
    FINALIZE = "finalize"
    PRINTABLE = "printable"


class StageStatus(StrEnum):
    """Status of one stage of one artifact.

    Stored in database (stage_records.status).

    Allowed transitions:
        idle -> running                       (admission)
        running -> ready | error | rate_limited  (completion)
        rate_limited -> idle                  (retry sweep)
        error -> idle                         (owner retry)
        any non-running -> idle               (privileged override)
    """

    IDLE = "idle"
    RUNNING = "running"
    READY = "ready"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"


class PipelineVersion(StrEnum):
    """Selects which stage DAG applies to an artifact.

    Stored in database (artifacts.pipeline_version).
    """

    LEGACY = "legacy"
    V2 = "v2"


class SessionPhase(StrEnum):
    """Coarse lifecycle of a story session. Linear, no skipping.

    Stored in database (sessions.phase).
    """

    INTAKE = "intake"
    DRAFTING = "drafting"
    CLOSING = "closing"
    FINALIZED = "finalized"


class SessionStatus(StrEnum):
    """Stored in database (sessions.status)."""

    ACTIVE = "active"
    COMPLETED = "completed"


class FailureClassification(StrEnum):
    """How a collaborator classifies its own failure.

    The orchestrator never infers this; collaborators report it.
    """

    RATE_LIMITED = "rate_limited"
    ERROR = "error"
