from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from app.core.typing import utc_now


class FraudCheckStatus(str, Enum):
    PENDING = "pending"
    FLAGGED = "flagged"
    APPROVED = "approved"


class Donation(SQLModel, table=True):
    """Donation recorded by the payment webhook; screened by the funding agent."""

    __tablename__ = "donations"

    id: Optional[int] = Field(default=None, primary_key=True)
    amount_usd: float
    currency: str = Field(default="usd", max_length=3)
    donor_email: Optional[str] = None
    fraud_check_status: FraudCheckStatus = Field(default=FraudCheckStatus.PENDING, index=True)
    created_at: datetime = Field(default_factory=utc_now)
