"""
Append-only agent event log.

Events are written by the trigger, the executor, the circuit breaker listener
and the approval gate. Ordering is by insertion (id) only.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

from app.core.typing import utc_now


class EventType(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    RETRIED = "retried"
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CIRCUIT_BLOCKED = "circuit_breaker_blocked"
    CIRCUIT_BREAKER = "circuit_breaker"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_DISPATCH_FAILED = "approval_dispatch_failed"


# One per attempt: a failed attempt writes RETRIED, the successful one ATTEMPT_SUCCEEDED
ATTEMPT_EVENT_TYPES = (EventType.RETRIED, EventType.ATTEMPT_SUCCEEDED)


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AgentEvent(SQLModel, table=True):
    __tablename__ = "agent_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: Optional[str] = Field(default=None, index=True, max_length=36)  # None for agent-level events
    agent_id: str = Field(index=True, max_length=100)
    event_type: str = Field(index=True, max_length=50)
    message: str
    severity: Severity = Field(default=Severity.INFO)
    data: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["AgentEvent", "EventType", "Severity", "ATTEMPT_EVENT_TYPES"]
