from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from app.core.typing import utc_now


class MilestoneEventStatus(str, Enum):
    REPORTED = "reported"
    VERIFIED = "verified"


class MilestoneEvent(SQLModel, table=True):
    """Progress report against a project milestone, published once verified."""

    __tablename__ = "milestone_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    milestone_id: str = Field(index=True, max_length=100)
    title: str = Field(max_length=300)
    progress: int = Field(default=0)  # percent
    status: MilestoneEventStatus = Field(default=MilestoneEventStatus.REPORTED, index=True)
    created_at: datetime = Field(default_factory=utc_now)
