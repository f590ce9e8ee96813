"""Workflow error taxonomy.

ValidationError and TerminalStateError are local and never retried by the
system. ConflictError and NetworkError mean the local view of the encounter can
no longer be trusted: the caller must re-fetch before mutating again.
"""


class WorkflowError(Exception):
    """Base exception for encounter workflow errors."""

    requires_resync: bool = False

    def __init__(self, message: str, *, encounter_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.encounter_id = encounter_id


class ValidationError(WorkflowError):
    """A phase gate is unmet. Raised before any network call."""

    pass


class ConflictError(WorkflowError):
    """Authoritative state diverged from the local assumption."""

    requires_resync = True


class EncounterNotFoundError(ConflictError):
    """The repository has no encounter with the requested id."""

    pass


class NetworkError(WorkflowError):
    """Transport failure; the outcome of the request is unknown."""

    requires_resync = True


class TerminalStateError(WorkflowError):
    """The encounter is FINISHED, CANCELED or FAILED and can no longer change."""

    pass
