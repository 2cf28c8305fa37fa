"""
Agent run model.

One row per execution request. Created pending by a trigger, moved to running
when the executor starts, and moved to a terminal status (success/failed)
exactly once. Rows are never deleted; they are the audit trail of what every
agent did.

Usage:
    from app.models.agent_run import AgentRun, RunStatus

    run = AgentRun(agent_id="agent_002_funding", triggered_by="dashboard")
    if run.status in TERMINAL_STATUSES:
        ...
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Index, JSON
from sqlmodel import Column, Field, SQLModel

from app.core.typing import utc_now


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED)
ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    API = "api"


def _new_run_id() -> str:
    return str(uuid.uuid4())


class AgentRun(SQLModel, table=True):
    """
    Persisted execution attempt of one agent.

    Attributes:
        id: Generated UUID string (also the durable job id)
        agent_id: Registry id of the agent
        status: pending -> running -> success | failed
        triggered_by: Who asked for the run ("dashboard", "cron", a user id)
        trigger_type: How the run was requested
        retry_count: Attempts that failed before the terminal status
        execution_time_ms: Wall time of the executor, set on terminal status
        items_processed: Reported by the agent output
        input_data: Opaque input handed to the agent
        output_data: Agent output data on success
        error_message: Last error on failure
        error_details: Structured error context on failure
    """

    __tablename__ = "agent_runs"

    id: str = Field(default_factory=_new_run_id, primary_key=True, max_length=36)
    agent_id: str = Field(index=True, max_length=100)
    status: RunStatus = Field(default=RunStatus.PENDING, index=True)
    triggered_by: str = Field(default="dashboard", max_length=100)
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL)
    started_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: Optional[datetime] = None
    retry_count: int = Field(default=0)
    execution_time_ms: Optional[int] = None
    items_processed: int = Field(default=0)
    input_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    output_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    __table_args__ = (
        # Health and metrics queries: runs of one agent in a time window
        Index("ix_agent_runs_agent_started", "agent_id", "started_at"),
    )


__all__ = ["AgentRun", "RunStatus", "TriggerType", "TERMINAL_STATUSES", "ACTIVE_STATUSES"]
