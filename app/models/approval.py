"""
Approval queue model.

Actions an agent (or webhook handler) wants a human to sign off on. An item
moves from pending to approved or rejected exactly once; approving it applies
a side effect to the domain table named by item_type.

Usage:
    from app.models.approval import ApprovalItem, ApprovalStatus, ApprovalItemType

    item = ApprovalItem(
        agent_id="agent_002_funding",
        item_type=ApprovalItemType.GRANT,
        item_id="12",
        title="Donation of $25,000.00 flagged for review",
    )
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Index, JSON
from sqlmodel import Column, Field, SQLModel

from app.core.typing import utc_now


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalItemType(str, Enum):
    POLICY_UPDATE = "policy_update"
    GRANT = "grant"
    MILESTONE = "milestone"


class ApprovalPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    ApprovalPriority.LOW: 0,
    ApprovalPriority.NORMAL: 1,
    ApprovalPriority.HIGH: 2,
    ApprovalPriority.URGENT: 3,
}


class ApprovalItem(SQLModel, table=True):
    """
    Pending human-reviewable action.

    Attributes:
        item_type: Which domain table the approval applies to
        item_id: Primary key of the row in that table (stored as text)
        run_id: Agent run that requested the approval, if any
        payload: Context for the reviewer (amounts, scores, summaries)
        reviewed_at / reviewed_by / reviewer_notes: Stamped by the decision
    """

    __tablename__ = "approval_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True, max_length=100)
    run_id: Optional[str] = Field(default=None, max_length=36)
    item_type: ApprovalItemType = Field(index=True)
    item_id: str = Field(max_length=64)
    title: str = Field(default="", max_length=300)
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING, index=True)
    priority: ApprovalPriority = Field(default=ApprovalPriority.NORMAL)
    payload: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, index=True)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = Field(default=None, max_length=100)
    reviewer_notes: Optional[str] = None

    __table_args__ = (
        # Deduplication of pending requests for the same domain row
        Index("ix_approval_queue_dedup", "item_type", "item_id", "status"),
    )


__all__ = [
    "ApprovalItem",
    "ApprovalStatus",
    "ApprovalItemType",
    "ApprovalPriority",
    "PRIORITY_RANK",
]
