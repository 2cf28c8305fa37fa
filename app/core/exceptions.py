"""
Domain error taxonomy.

Each error carries the HTTP status the API layer maps it to. Errors raised on
the detached execution path (circuit open, execution, persistence) are logged
and recorded on the run instead of reaching an HTTP caller.
"""

from typing import Any, Dict, Optional


class AgentOpsError(Exception):
    """Base class for all service errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AgentOpsError):
    """Bad input from the caller."""

    status_code = 400


class InvalidActionError(ValidationError):
    """An action outside the allowed set (approve/reject, reset/status)."""


class NotFoundError(AgentOpsError):
    status_code = 404


class AlreadyReviewedError(AgentOpsError):
    """An approval item left the pending state before this decision landed."""

    status_code = 409


class AgentUnavailableError(AgentOpsError):
    """Agent is disabled or missing required configuration."""

    status_code = 400


class CircuitOpenError(AgentOpsError):
    """The circuit breaker refused execution."""

    status_code = 503

    def __init__(self, agent_id: str, state: str, failures: int):
        super().__init__(
            f"Agent {agent_id} is temporarily unavailable due to repeated failures. "
            f"Circuit breaker is {state}. Please try again later.",
            details={"agent_id": agent_id, "state": state, "failures": failures},
        )
        self.agent_id = agent_id
        self.state = state
        self.failures = failures


class AgentExecutionError(AgentOpsError):
    """The agent kept failing after all retry attempts."""

    def __init__(self, agent_id: str, attempts: int, cause: BaseException):
        super().__init__(
            f"Agent {agent_id} failed after {attempts} attempt(s): {cause}",
            details={"agent_id": agent_id, "attempts": attempts, "error": str(cause)},
        )
        self.agent_id = agent_id
        self.attempts = attempts
        self.cause = cause


class RunCancelledError(AgentOpsError):
    """A cancellation request was honoured between retry attempts."""

    status_code = 409


class PersistenceError(AgentOpsError):
    """A datastore write failed."""


class UpstreamServiceError(AgentOpsError):
    """A payment, LLM or notification call failed."""

    status_code = 502

    def __init__(self, service: str, message: str, status: Optional[int] = None):
        super().__init__(f"{service}: {message}", details={"service": service, "status": status})
        self.service = service
        self.status = status


class DatastoreNotConfiguredError(AgentOpsError):
    status_code = 503

    def __init__(self) -> None:
        super().__init__("Datastore not configured")


__all__ = [
    "AgentOpsError",
    "ValidationError",
    "InvalidActionError",
    "NotFoundError",
    "AlreadyReviewedError",
    "AgentUnavailableError",
    "CircuitOpenError",
    "AgentExecutionError",
    "RunCancelledError",
    "PersistenceError",
    "UpstreamServiceError",
    "DatastoreNotConfiguredError",
]
