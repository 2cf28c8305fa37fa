"""
Tests for circuit breaker functionality.

Tests cover:
1. State transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
2. Core methods (record_success, record_failure, can_execute, reset)
3. CircuitBreakerRegistry (per-agent isolation, listeners, get_all_states)
4. Persistence through CircuitStateStore
"""

from datetime import datetime, timedelta, timezone

from sqlmodel import select

from app.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStateStore,
)
from app.models.circuit_breaker_state import CircuitBreakerState


def _expire_cooldown(cb: CircuitBreaker, seconds: float = 61) -> None:
    cb._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=seconds)


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_circuit_states_exist(self):
        """Verify all expected circuit states are defined."""
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"

    def test_state_count(self):
        """Verify there are exactly 3 states."""
        assert len(CircuitState) == 3


class TestCircuitBreakerInitialization:
    """Tests for CircuitBreaker initialization."""

    def test_default_initialization(self):
        """Test that CircuitBreaker initializes with correct defaults."""
        cb = CircuitBreaker(name="agent_004_milestones")

        assert cb.name == "agent_004_milestones"
        assert cb.failure_threshold == 5
        assert cb.recovery_timeout == 60.0
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.last_failure_time is None

    def test_custom_initialization(self):
        """Test that CircuitBreaker accepts custom parameters."""
        cb = CircuitBreaker(name="custom", failure_threshold=10, recovery_timeout=120.0)

        assert cb.failure_threshold == 10
        assert cb.recovery_timeout == 120.0


class TestStateTransitions:
    """Tests for circuit breaker state transitions."""

    def test_closed_to_open_after_failure_threshold(self):
        """Test CLOSED -> OPEN after failure_threshold failures."""
        cb = CircuitBreaker(name="test", failure_threshold=3)

        assert cb.record_failure() is None
        assert cb.record_failure() is None
        assert cb.state == CircuitState.CLOSED

        transition = cb.record_failure()
        assert transition == (CircuitState.CLOSED, CircuitState.OPEN)
        assert cb.state == CircuitState.OPEN

    def test_open_to_half_open_after_recovery_timeout(self):
        """Test OPEN -> HALF_OPEN once the cooldown has elapsed."""
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=60.0)
        cb.record_failure()
        _expire_cooldown(cb)

        allowed, transition = cb.can_execute()

        assert allowed is True
        assert transition == (CircuitState.OPEN, CircuitState.HALF_OPEN)
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_to_closed_on_success(self):
        """A single successful trial run closes the circuit."""
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()
        _expire_cooldown(cb)
        cb.can_execute()

        transition = cb.record_success()

        assert transition == (CircuitState.HALF_OPEN, CircuitState.CLOSED)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_to_open_on_failure(self):
        """A failed trial run reopens the circuit and restarts the cooldown."""
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()
        _expire_cooldown(cb)
        cb.can_execute()

        transition = cb.record_failure()

        assert transition == (CircuitState.HALF_OPEN, CircuitState.OPEN)
        assert cb.state == CircuitState.OPEN
        allowed, _ = cb.can_execute()
        assert allowed is False

    def test_reset_closes_open_circuit(self):
        """Manual reset returns an open breaker to CLOSED with no failures."""
        cb = CircuitBreaker(name="test", failure_threshold=2)
        cb.record_failure()
        cb.record_failure()

        transition = cb.reset()

        assert transition == (CircuitState.OPEN, CircuitState.CLOSED)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_reset_when_closed_reports_no_transition(self):
        """Resetting a closed breaker is a no-op transition."""
        cb = CircuitBreaker(name="test")
        assert cb.reset() is None


class TestRecordSuccess:
    """Tests for record_success method."""

    def test_record_success_resets_failure_count(self):
        """Test that record_success resets failure count when CLOSED."""
        cb = CircuitBreaker(name="test", failure_threshold=5)
        cb.record_failure()
        cb.record_failure()
        assert cb.failure_count == 2

        assert cb.record_success() is None
        assert cb.failure_count == 0

    def test_failures_must_be_consecutive(self):
        """A success between failures keeps the circuit closed."""
        cb = CircuitBreaker(name="test", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        cb.record_failure()

        assert cb.state == CircuitState.CLOSED


class TestRecordFailure:
    """Tests for record_failure method."""

    def test_record_failure_sets_last_failure_time(self):
        """Test that record_failure sets last_failure_time."""
        cb = CircuitBreaker(name="test")
        cb.record_failure()

        assert cb.last_failure_time is not None
        time_diff = (datetime.now(timezone.utc) - cb.last_failure_time).total_seconds()
        assert time_diff < 1.0

    def test_failures_beyond_threshold_keep_counting(self):
        """Failures recorded while OPEN still increment the count."""
        cb = CircuitBreaker(name="test", failure_threshold=2)
        for _ in range(4):
            cb.record_failure()

        assert cb.state == CircuitState.OPEN
        assert cb.failure_count == 4


class TestCanExecute:
    """Tests for can_execute method."""

    def test_allowed_when_closed(self):
        """Test that runs are allowed when circuit is CLOSED."""
        cb = CircuitBreaker(name="test")
        for _ in range(10):
            assert cb.can_execute() == (True, None)

    def test_blocked_when_open(self):
        """Test that runs are blocked when circuit is OPEN."""
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()

        assert cb.can_execute() == (False, None)
        assert cb.can_execute() == (False, None)

    def test_every_call_allowed_while_half_open(self):
        """HALF_OPEN does not limit the number of trial runs."""
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()
        _expire_cooldown(cb)
        cb.can_execute()

        assert cb.can_execute() == (True, None)
        assert cb.can_execute() == (True, None)

    def test_recovery_timeout_boundary(self):
        """The transition happens exactly at recovery_timeout, not before."""
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=30.0)
        cb.record_failure()

        _expire_cooldown(cb, seconds=29)
        assert cb.can_execute()[0] is False
        assert cb.state == CircuitState.OPEN

        _expire_cooldown(cb, seconds=30)
        assert cb.can_execute()[0] is True
        assert cb.state == CircuitState.HALF_OPEN


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_registry_creates_breaker_with_registry_settings(self):
        """Breakers are created lazily with the registry's threshold and timeout."""
        registry = CircuitBreakerRegistry(failure_threshold=2, recovery_timeout=10.0)
        cb = registry.get("agent_002_funding")

        assert cb.name == "agent_002_funding"
        assert cb.failure_threshold == 2
        assert cb.recovery_timeout == 10.0
        assert registry.get("agent_002_funding") is cb

    def test_agents_are_isolated(self):
        """Failures of one agent never affect another agent's breaker."""
        registry = CircuitBreakerRegistry(failure_threshold=2)
        registry.record_failure("agent_002_funding")
        registry.record_failure("agent_002_funding")

        assert registry.get_state("agent_002_funding") == CircuitState.OPEN
        assert registry.can_execute("agent_002_funding") is False
        assert registry.can_execute("agent_004_milestones") is True
        assert registry.get_failure_count("agent_004_milestones") == 0

    def test_unknown_agent_reads_as_closed(self):
        """Reading state of an unseen agent does not create a breaker."""
        registry = CircuitBreakerRegistry()

        assert registry.get_state("never_seen") == CircuitState.CLOSED
        assert registry.get_failure_count("never_seen") == 0
        assert registry.get_all_states() == {}

    def test_get_all_states(self):
        """get_all_states returns a snapshot per known agent."""
        registry = CircuitBreakerRegistry(failure_threshold=1)
        registry.record_success("closed_agent")
        registry.record_failure("open_agent")

        states = registry.get_all_states()

        assert states["closed_agent"]["state"] == "closed"
        assert states["closed_agent"]["last_failure"] is None
        assert states["open_agent"]["state"] == "open"
        assert states["open_agent"]["failures"] == 1
        assert states["open_agent"]["last_failure"] is not None

    def test_listener_receives_transitions(self):
        """Listeners are called with (agent_id, old, new, failures) on every transition."""
        registry = CircuitBreakerRegistry(failure_threshold=1)
        calls = []
        registry.add_listener(lambda *args: calls.append(args))

        registry.record_failure("agent_x")
        _expire_cooldown(registry.get("agent_x"))
        registry.can_execute("agent_x")
        registry.record_success("agent_x")

        assert calls == [
            ("agent_x", "closed", "open", 1),
            ("agent_x", "open", "half_open", 1),
            ("agent_x", "half_open", "closed", 0),
        ]

    def test_listener_not_called_without_transition(self):
        """Plain failures below threshold do not notify."""
        registry = CircuitBreakerRegistry(failure_threshold=3)
        calls = []
        registry.add_listener(lambda *args: calls.append(args))

        registry.record_failure("agent_x")
        registry.record_success("agent_x")

        assert calls == []

    def test_silent_reset(self):
        """reset(notify=False) closes the breaker without calling listeners."""
        registry = CircuitBreakerRegistry(failure_threshold=1)
        registry.record_failure("agent_x")
        calls = []
        registry.add_listener(lambda *args: calls.append(args))

        registry.reset("agent_x", notify=False)

        assert registry.get_state("agent_x") == CircuitState.CLOSED
        assert calls == []

    def test_failing_listener_does_not_break_breaker(self):
        """A listener that raises is logged; state still changes."""
        registry = CircuitBreakerRegistry(failure_threshold=1)

        def broken_listener(*args):
            raise RuntimeError("listener down")

        registry.add_listener(broken_listener)
        registry.record_failure("agent_x")

        assert registry.get_state("agent_x") == CircuitState.OPEN

    def test_clear(self):
        """clear() forgets every breaker."""
        registry = CircuitBreakerRegistry(failure_threshold=1)
        registry.record_failure("agent_x")
        registry.clear()

        assert registry.get_state("agent_x") == CircuitState.CLOSED


class TestCircuitStatePersistence:
    """Tests for mirroring breaker state into circuit_breaker_state."""

    def test_transition_is_persisted(self, session_factory, test_session):
        """Opening a breaker writes its state row."""
        registry = CircuitBreakerRegistry(failure_threshold=1, store=CircuitStateStore(session_factory))
        registry.record_failure("agent_002_funding")

        row = test_session.exec(
            select(CircuitBreakerState).where(CircuitBreakerState.agent_id == "agent_002_funding")
        ).one()
        assert row.state == "open"
        assert row.failure_count == 1
        assert row.last_failure_at is not None

    def test_new_registry_restores_open_breaker(self, session_factory):
        """A restarted process keeps an open breaker open."""
        store = CircuitStateStore(session_factory)
        first = CircuitBreakerRegistry(failure_threshold=1, store=store)
        first.record_failure("agent_002_funding")

        restarted = CircuitBreakerRegistry(failure_threshold=1, store=store)

        assert restarted.can_execute("agent_002_funding") is False
        assert restarted.get_failure_count("agent_002_funding") == 1

    def test_reset_is_persisted_even_when_closed(self, session_factory, test_session):
        """Manual reset always writes the closed state."""
        registry = CircuitBreakerRegistry(store=CircuitStateStore(session_factory))
        registry.reset("agent_004_milestones")

        row = test_session.exec(
            select(CircuitBreakerState).where(CircuitBreakerState.agent_id == "agent_004_milestones")
        ).one()
        assert row.state == "closed"

    def test_store_errors_are_swallowed(self):
        """A broken datastore never breaks the breaker."""

        def broken_factory():
            raise RuntimeError("datastore down")

        registry = CircuitBreakerRegistry(failure_threshold=1, store=CircuitStateStore(broken_factory))
        registry.record_failure("agent_x")

        assert registry.get_state("agent_x") == CircuitState.OPEN
