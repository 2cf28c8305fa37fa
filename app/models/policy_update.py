from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from app.core.typing import utc_now


class PolicyUpdate(SQLModel, table=True):
    """Policy or regulatory change picked up by the policy monitor."""

    __tablename__ = "policy_updates"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=300)
    summary: str = ""
    source_url: Optional[str] = None
    relevance_score: float = Field(default=0.0)
    reviewed: bool = Field(default=False, index=True)
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
