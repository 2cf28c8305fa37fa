"""
Test fixtures for agent ops tests.

Provides database session fixtures, wired-up execution components and a
test data factory.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Generator, List, Optional
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers every table on SQLModel.metadata
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.models.agent_run import AgentRun, RunStatus, TriggerType
from app.models.approval import ApprovalItem, ApprovalItemType, ApprovalPriority, ApprovalStatus
from app.models.donation import Donation, FraudCheckStatus
from app.models.milestone_event import MilestoneEvent, MilestoneEventStatus
from app.models.policy_update import PolicyUpdate
from app.services.event_stream import EventBroadcaster
from app.services.executor import RetryPolicy
from app.services.run_store import RunRecorder, make_circuit_event_listener


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

# Retries without waiting
NO_DELAY = RetryPolicy(max_retries=3, initial_delay_ms=0, max_delay_ms=0)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def session_factory(test_engine):
    """New session per call on the test engine, like app.db.session_factory."""

    def _factory() -> Session:
        return Session(test_engine)

    return _factory


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def recorder(session_factory, broadcaster) -> RunRecorder:
    return RunRecorder(session_factory, broadcaster)


@pytest.fixture
def breakers(recorder) -> CircuitBreakerRegistry:
    """Registry with threshold 3 that writes circuit_breaker events."""
    registry = CircuitBreakerRegistry(failure_threshold=3, recovery_timeout=60.0)
    registry.add_listener(make_circuit_event_listener(recorder))
    return registry


@pytest.fixture
def client(test_engine, session_factory):
    """
    TestClient against app.main with the datastore swapped for the test engine.

    The lifespan is not run; components are wired directly onto app.state.
    Background tasks (agent runs) complete before the response returns.
    """
    from fastapi.testclient import TestClient

    from app.db import get_session
    from app.main import app, build_components

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    build_components(app, session_factory, retry_policy=NO_DELAY)

    yield TestClient(app)

    app.dependency_overrides.clear()


# ============================================
# Test Data Factory
# ============================================


class TestDataFactory:
    """
    Factory for domain rows used across tests.
    Every create_* commits and refreshes the row.
    """

    __test__ = False

    def __init__(self, session: Session):
        self.session = session

    def _save(self, row: Any) -> Any:
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def create_run(
        self,
        agent_id: str = "agent_004_milestones",
        status: RunStatus = RunStatus.SUCCESS,
        started_at: Optional[datetime] = None,
        execution_time_ms: Optional[int] = 1000,
        items_processed: int = 0,
        error_message: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> AgentRun:
        started_at = started_at or datetime.now(timezone.utc)
        completed_at = None
        if status in (RunStatus.SUCCESS, RunStatus.FAILED) and execution_time_ms is not None:
            completed_at = started_at + timedelta(milliseconds=execution_time_ms)
        return self._save(
            AgentRun(
                agent_id=agent_id,
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                execution_time_ms=execution_time_ms,
                items_processed=items_processed,
                error_message=error_message,
                trigger_type=trigger_type,
            )
        )

    def create_runs(self, count: int, **kwargs) -> List[AgentRun]:
        return [self.create_run(**kwargs) for _ in range(count)]

    def create_donation(
        self,
        amount_usd: float,
        donor_email: Optional[str] = "donor@example.org",
        status: FraudCheckStatus = FraudCheckStatus.PENDING,
        created_at: Optional[datetime] = None,
    ) -> Donation:
        donation = Donation(amount_usd=amount_usd, donor_email=donor_email, fraud_check_status=status)
        if created_at:
            donation.created_at = created_at
        return self._save(donation)

    def create_milestone_event(
        self,
        title: str = "Phase 1 site survey",
        milestone_id: str = "ms-survey",
        progress: int = 50,
        status: MilestoneEventStatus = MilestoneEventStatus.REPORTED,
    ) -> MilestoneEvent:
        return self._save(MilestoneEvent(milestone_id=milestone_id, title=title, progress=progress, status=status))

    def create_policy_update(self, title: str = "DRC energy infrastructure plan", relevance: float = 0.6) -> PolicyUpdate:
        return self._save(PolicyUpdate(title=title, summary="", relevance_score=relevance))

    def create_approval(
        self,
        item_type: ApprovalItemType = ApprovalItemType.MILESTONE,
        item_id: str = "1",
        agent_id: str = "agent_004_milestones",
        status: ApprovalStatus = ApprovalStatus.PENDING,
        priority: ApprovalPriority = ApprovalPriority.NORMAL,
        title: str = "Review item",
        run_id: Optional[str] = None,
    ) -> ApprovalItem:
        return self._save(
            ApprovalItem(
                agent_id=agent_id,
                item_type=item_type,
                item_id=item_id,
                status=status,
                priority=priority,
                title=title,
                run_id=run_id,
            )
        )


@pytest.fixture
def factory(test_session: Session) -> TestDataFactory:
    """Provide a test data factory."""
    return TestDataFactory(test_session)
