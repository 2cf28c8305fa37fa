"""
Per-agent circuit breaker.

Stops invoking an agent that keeps failing and lets it back in after a
cooldown. One CircuitBreaker per agent id, created lazily by a
CircuitBreakerRegistry that the application constructs once and injects.

State machine:
    CLOSED --failure_threshold reached--> OPEN
    OPEN --recovery_timeout elapsed (checked by can_execute)--> HALF_OPEN
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN (cooldown restarts)
    any --reset / success--> CLOSED

State is held per process. With CIRCUIT_BREAKER_PERSIST enabled the registry
mirrors transitions into the circuit_breaker_state table and restores them
when a breaker is first created, so restarts keep open breakers open. It is
not a cross-instance lock: two instances still count failures independently.

The breaker never raises. Persistence and listener failures are logged.
"""

from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import structlog

from app.core.typing import as_utc

logger = structlog.get_logger(__name__)

# (agent_id, old_state, new_state, failure_count) - return value is ignored
StateChangeListener = Callable[[str, str, str, int], Any]


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject runs
    HALF_OPEN = "half_open"  # Cooldown elapsed, trial run allowed


class CircuitStateStore:
    """Reads and writes breaker snapshots in the circuit_breaker_state table."""

    def __init__(self, session_factory: Callable[[], Any]):
        self._session_factory = session_factory

    def load(self, agent_id: str) -> Optional[Dict[str, Any]]:
        from sqlmodel import select
        from app.models.circuit_breaker_state import CircuitBreakerState

        try:
            with self._session_factory() as session:
                db_state = session.exec(
                    select(CircuitBreakerState).where(CircuitBreakerState.agent_id == agent_id)
                ).first()
                if db_state:
                    return {
                        "state": db_state.state,
                        "failure_count": db_state.failure_count,
                        "last_failure_at": db_state.last_failure_at,
                    }
        except Exception as e:
            logger.warning("Failed to load circuit breaker state", agent_id=agent_id, error=str(e))
        return None

    def save(self, agent_id: str, state: str, failure_count: int, last_failure_at: Optional[datetime]) -> None:
        from sqlmodel import select
        from app.models.circuit_breaker_state import CircuitBreakerState

        try:
            with self._session_factory() as session:
                db_state = session.exec(
                    select(CircuitBreakerState).where(CircuitBreakerState.agent_id == agent_id)
                ).first()

                if db_state:
                    db_state.state = state
                    db_state.failure_count = failure_count
                    db_state.last_failure_at = last_failure_at
                    db_state.updated_at = datetime.now(timezone.utc)
                else:
                    db_state = CircuitBreakerState(
                        agent_id=agent_id,
                        state=state,
                        failure_count=failure_count,
                        last_failure_at=last_failure_at,
                    )
                session.add(db_state)
                session.commit()
        except Exception as e:
            logger.warning("Failed to persist circuit breaker state", agent_id=agent_id, error=str(e))


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        """Current state. Use can_execute() for the OPEN -> HALF_OPEN transition."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[datetime]:
        return self._last_failure_time

    def restore(self, saved: Dict[str, Any]) -> None:
        try:
            self._state = CircuitState(saved.get("state", "closed"))
        except ValueError:
            self._state = CircuitState.CLOSED
        self._failure_count = saved.get("failure_count", 0) or 0
        last_failure = saved.get("last_failure_at")
        self._last_failure_time = as_utc(last_failure) if last_failure else None
        logger.info(
            "Circuit restored",
            agent_id=self.name,
            state=self._state.value,
            failures=self._failure_count,
        )

    def record_success(self) -> Optional[tuple[CircuitState, CircuitState]]:
        """Reset to CLOSED. Returns (old, new) when the state changed."""
        with self._lock:
            old_state = self._state
            self._failure_count = 0
            self._state = CircuitState.CLOSED
        if old_state != CircuitState.CLOSED:
            logger.info("Circuit closed", agent_id=self.name, previous=old_state.value)
            return old_state, CircuitState.CLOSED
        return None

    def record_failure(self) -> Optional[tuple[CircuitState, CircuitState]]:
        """Count a failure. Returns (old, new) when the state changed."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)
            old_state = self._state

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit reopened - recovery trial failed",
                    agent_id=self.name,
                    failures=self._failure_count,
                )
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit opened - threshold reached",
                    agent_id=self.name,
                    failures=self._failure_count,
                    threshold=self.failure_threshold,
                )
            new_state = self._state

        if old_state != new_state:
            return old_state, new_state
        return None

    def can_execute(self) -> tuple[bool, Optional[tuple[CircuitState, CircuitState]]]:
        """
        Whether a run may start, plus the (old, new) transition if one happened.

        OPEN moves to HALF_OPEN once recovery_timeout has passed since the last
        failure; that call and every call while HALF_OPEN are allowed.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True, None
            if self._state == CircuitState.HALF_OPEN:
                return True, None

            if self._last_failure_time is not None:
                elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info("Circuit half-open - allowing trial run", agent_id=self.name)
                    return True, (CircuitState.OPEN, CircuitState.HALF_OPEN)
            return False, None

    def reset(self) -> Optional[tuple[CircuitState, CircuitState]]:
        with self._lock:
            old_state = self._state
            self._state = CircuitState.CLOSED
            self._failure_count = 0
        logger.info("Circuit manually reset", agent_id=self.name, previous=old_state.value)
        if old_state != CircuitState.CLOSED:
            return old_state, CircuitState.CLOSED
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "failures": self._failure_count,
            "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
        }


class CircuitBreakerRegistry:
    """
    Owns every agent's breaker for one process.

    Constructed explicitly (see app.main lifespan) and passed to the executor
    and the API through dependencies.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        store: Optional[CircuitStateStore] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._store = store
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()
        self._listeners: List[StateChangeListener] = []

    def add_listener(self, listener: StateChangeListener) -> None:
        self._listeners.append(listener)

    def get(self, agent_id: str) -> CircuitBreaker:
        """Breaker for agent_id, created (and restored from the store) on first use."""
        with self._lock:
            breaker = self._breakers.get(agent_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=agent_id,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                )
                if self._store:
                    saved = self._store.load(agent_id)
                    if saved:
                        breaker.restore(saved)
                self._breakers[agent_id] = breaker
            return breaker

    def _after_transition(
        self,
        breaker: CircuitBreaker,
        transition: Optional[tuple[CircuitState, CircuitState]],
        force_persist: bool = False,
        notify: bool = True,
    ) -> None:
        # Persist and notify outside the breaker lock
        if transition is None and not force_persist:
            return
        if self._store:
            self._store.save(
                breaker.name,
                breaker.state.value,
                breaker.failure_count,
                breaker.last_failure_time,
            )
        if transition is None or not notify:
            return
        old_state, new_state = transition
        for listener in self._listeners:
            try:
                listener(breaker.name, old_state.value, new_state.value, breaker.failure_count)
            except Exception as e:
                logger.error("Circuit breaker listener failed", agent_id=breaker.name, error=str(e))

    def can_execute(self, agent_id: str) -> bool:
        breaker = self.get(agent_id)
        allowed, transition = breaker.can_execute()
        self._after_transition(breaker, transition)
        return allowed

    def record_success(self, agent_id: str) -> None:
        breaker = self.get(agent_id)
        self._after_transition(breaker, breaker.record_success())

    def record_failure(self, agent_id: str) -> None:
        breaker = self.get(agent_id)
        self._after_transition(breaker, breaker.record_failure())

    def reset(self, agent_id: str, notify: bool = True) -> None:
        """Close the breaker. notify=False skips listeners when the caller records the reset itself."""
        breaker = self.get(agent_id)
        self._after_transition(breaker, breaker.reset(), force_persist=True, notify=notify)

    def get_state(self, agent_id: str) -> CircuitState:
        breaker = self._breakers.get(agent_id)
        return breaker.state if breaker else CircuitState.CLOSED

    def get_failure_count(self, agent_id: str) -> int:
        breaker = self._breakers.get(agent_id)
        return breaker.failure_count if breaker else 0

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.snapshot() for breaker in breakers}

    def clear(self) -> None:
        """Forget every breaker (tests and process shutdown)."""
        with self._lock:
            self._breakers.clear()


__all__ = [
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitStateStore",
    "StateChangeListener",
]
