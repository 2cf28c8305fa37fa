"""
Type helpers for SQLAlchemy/SQLModel compatibility with type checkers.

SQLModel fields are declared with Python types (e.g., `status: RunStatus`) but
at the class level they are InstrumentedAttribute descriptors with column
methods like .desc(), .in_(), .is_(). Type checkers see plain Python types, so
column methods are wrapped with col().
"""

from typing import TYPE_CHECKING, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op.

    Usage:
        select(AgentRun).order_by(col(AgentRun.started_at).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Current UTC time (timezone-aware).

    Usage:
        created_at: datetime = Field(default_factory=utc_now)
    """
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes read back from the datastore.

    SQLite drops tzinfo on round-trip; Postgres keeps it.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = ["col", "utc_now", "as_utc"]
