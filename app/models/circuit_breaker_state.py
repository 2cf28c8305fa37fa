"""
Circuit breaker state persistence model.

Optional mirror of the in-memory breaker per agent, so a restart does not
immediately retry an agent whose breaker was open.
"""

from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from app.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    __tablename__ = "circuit_breaker_state"

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(unique=True, index=True, max_length=100)
    state: str = Field(default="closed")  # "closed", "open", "half_open"
    failure_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)
