"""
Dead-letter record for runs that exhausted their retries.

Kept for manual review alongside the failed AgentRun.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

from app.core.typing import utc_now


class AgentFailure(SQLModel, table=True):
    __tablename__ = "agent_failures"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True, max_length=36)
    agent_id: str = Field(index=True, max_length=100)
    error_message: str
    error_details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    input_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    resolved: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["AgentFailure"]
