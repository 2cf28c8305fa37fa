from typing import Iterator, Optional

from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
import structlog

from app.core.config import settings
from app.core.exceptions import DatastoreNotConfiguredError

logger = structlog.get_logger(__name__)


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    # Hosted Postgres drops idle connections; pre-ping and recycle
    return create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )


engine: Optional[Engine] = build_engine(settings.DATABASE_URL) if settings.DATABASE_URL else None

if engine is None:
    logger.warning("DATABASE_URL not set - datastore-backed endpoints will report unavailable")


@event.listens_for(Engine, "connect")
def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time on Postgres connections."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning("Could not set statement timeout", error=str(e))
    finally:
        cursor.close()


def is_configured() -> bool:
    return engine is not None


def get_engine() -> Engine:
    if engine is None:
        raise DatastoreNotConfiguredError()
    return engine


def session_factory() -> Session:
    """New session on the configured engine. Callers own closing it."""
    return Session(get_engine())


def get_session() -> Iterator[Session]:
    with Session(get_engine()) as session:
        yield session


def create_db_and_tables():
    import app.models  # noqa: F401  registers every table on SQLModel.metadata

    SQLModel.metadata.create_all(get_engine())
