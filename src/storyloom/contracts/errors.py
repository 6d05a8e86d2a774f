"""Exception taxonomy.

Only precondition failures are raised to callers. Transient provider failures
and hard generation failures are recorded as stage statuses, never raised.
A rejected admission is not an error at all.
"""


class StoryloomError(Exception):
    """Base class for all storyloom exceptions."""


class PreconditionError(StoryloomError):
    """Operation invoked against state that does not permit it.

    Wrong session phase, missing session fields, unknown stage for the
    artifact's pipeline. Surfaced immediately and never retried.
    """


class SessionNotFoundError(PreconditionError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class TemplateNotFoundError(PreconditionError):
    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Narrative template not found: {template_id}")


class ArtifactNotFoundError(PreconditionError):
    def __init__(self, artifact_id: str) -> None:
        self.artifact_id = artifact_id
        super().__init__(f"Artifact not found: {artifact_id}")


class PhaseError(PreconditionError):
    """Session is in the wrong phase for the requested operation.

    Attributes:
        session_id: Session the operation targeted
        expected: Phase(s) the operation requires
        actual: Phase the session was in
    """

    def __init__(self, session_id: str, operation: str, expected: tuple[str, ...], actual: str) -> None:
        self.session_id = session_id
        self.operation = operation
        self.expected = expected
        self.actual = actual
        allowed = " or ".join(expected)
        super().__init__(f"Cannot {operation} session {session_id}: phase is '{actual}', requires {allowed}")


class AuthorizationError(StoryloomError):
    """Caller lacks the privilege required by an administrative code path."""


class OrchestrationInvariantError(StoryloomError):
    """Internal invariant violated. Indicates a bug, not bad input."""


class TemplateConflictError(PreconditionError):
    """A template id is already registered with a different step sequence."""

    def __init__(self, template_id: str, existing: tuple[str, ...], proposed: tuple[str, ...]) -> None:
        self.template_id = template_id
        self.existing = existing
        self.proposed = proposed
        super().__init__(f"Narrative template {template_id} is already registered with steps {list(existing)}, refusing {list(proposed)}")
