"""Error taxonomy for pool lifecycle operations."""

from typing import List, Optional


class PoolError(Exception):
    """Base class for expected pool operation failures."""

    code = "error"

    def __init__(self, message: str, outputs: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.outputs = list(outputs or [])


class ValidationError(PoolError):
    """Bad input: missing label, no drives, unknown action."""

    code = "validation"


class ProtectedResourceError(PoolError):
    """The operation targets a protected drive."""

    code = "protected"


class NotFoundError(PoolError):
    """Unknown pool GUID or drive id."""

    code = "not_found"


class PoolBusyError(PoolError):
    """The pool is mid-creation and cannot accept lifecycle actions."""

    code = "busy"


class AgentCommunicationError(PoolError):
    """The agent could not be reached or returned garbage. Always retryable."""

    code = "agent_communication"


class AgentOperationError(PoolError):
    """The agent was reached but reported a failure."""

    code = "agent_operation"


class PersistenceError(PoolError):
    """A metadata transaction failed and was rolled back."""

    code = "persistence"
