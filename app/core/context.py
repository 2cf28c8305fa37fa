"""
Request and run context for log correlation.

Uses contextvars so the values follow a request through awaits, and a
detached agent run through its own task.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # In the executor
    set_run_context(run_id, agent_id)

    # In error handlers
    capture_exception(exc, context=get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_correlation_id",
    "get_correlation_id",
    "set_run_context",
    "get_run_id",
    "get_agent_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_run_id: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
_agent_id: ContextVar[Optional[str]] = ContextVar("agent_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set correlation ID for tracing across services.

    Passed in via the X-Correlation-ID header.
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_run_context(run_id: Optional[str], agent_id: Optional[str]) -> None:
    """Bind the agent run being executed in the current task."""
    _run_id.set(run_id)
    _agent_id.set(agent_id)


def get_run_id() -> Optional[str]:
    return _run_id.get()


def get_agent_id() -> Optional[str]:
    return _agent_id.get()


def clear_context() -> None:
    """
    Clear all context variables.

    Called at end of request to prevent context leaking.
    """
    _request_id.set(None)
    _correlation_id.set(None)
    _run_id.set(None)
    _agent_id.set(None)


def get_context_dict() -> dict:
    """All context variables as a dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "correlation_id": get_correlation_id(),
        "run_id": get_run_id(),
        "agent_id": get_agent_id(),
    }
