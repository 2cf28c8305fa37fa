"""
Run Store

Persistence for agent runs, the append-only event log and the dead-letter
table. Two layers:

- Plain functions taking a session (create_run, get_run, list_run_events,
  record_event) used by request handlers, which own their session.
- RunRecorder, used by the detached executor. It opens a short session per
  write and never raises: a datastore failure is logged and captured as a
  PersistenceError so it cannot mask the outcome of the agent itself.

Terminal status updates are conditional on the run still being pending or
running, so only the first terminal mutation lands.

Usage:
    run = create_run(session, "agent_002_funding", triggered_by="dashboard")
    record_event(session, run.agent_id, EventType.QUEUED, "Run queued", run_id=run.id)

    recorder = RunRecorder(session_factory, broadcaster)
    recorder.mark_running(run.id, run.agent_id)
    recorder.complete_run(run.id, run.agent_id, output_data={...}, items_processed=3, execution_time_ms=812)
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlmodel import Session, select

from app.core.errors import capture_exception, capture_message
from app.core.exceptions import PersistenceError
from app.core.typing import col
from app.models.agent_event import AgentEvent, EventType, Severity
from app.models.agent_failure import AgentFailure
from app.models.agent_run import ACTIVE_STATUSES, AgentRun, RunStatus, TriggerType
from app.schemas import AgentEventOut
from app.services.event_stream import EventBroadcaster

logger = structlog.get_logger(__name__)


def create_run(
    session: Session,
    agent_id: str,
    triggered_by: str = "dashboard",
    trigger_type: TriggerType = TriggerType.MANUAL,
    input_data: Optional[Any] = None,
) -> AgentRun:
    """Insert a pending run. Raises on datastore failure (the caller answers 500)."""
    run = AgentRun(
        agent_id=agent_id,
        triggered_by=triggered_by,
        trigger_type=trigger_type,
        input_data=input_data,
    )
    session.add(run)
    session.commit()
    session.refresh(run)
    logger.info("Run created", run_id=run.id, agent_id=agent_id, trigger_type=trigger_type.value)
    return run


def queue_run(
    session: Session,
    agent_id: str,
    triggered_by: str = "dashboard",
    trigger_type: TriggerType = TriggerType.MANUAL,
    input_data: Optional[Any] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> AgentRun:
    """Create a pending run and its "queued" event. Only the run insert is required to succeed."""
    run = create_run(session, agent_id, triggered_by, trigger_type, input_data)
    try:
        record_event(
            session,
            agent_id,
            EventType.QUEUED,
            f"Agent {agent_id} queued by {triggered_by}",
            run_id=run.id,
            data={"triggeredBy": triggered_by, "triggerType": trigger_type.value},
            broadcaster=broadcaster,
        )
    except Exception as e:
        session.rollback()
        logger.warning("Failed to record queued event", run_id=run.id, agent_id=agent_id, error=str(e))
    return run


def get_run(session: Session, run_id: str) -> Optional[AgentRun]:
    return session.get(AgentRun, run_id)


def list_run_events(session: Session, run_id: str) -> List[AgentEvent]:
    stmt = select(AgentEvent).where(col(AgentEvent.run_id) == run_id).order_by(col(AgentEvent.id).asc())
    return list(session.exec(stmt).all())


def record_event(
    session: Session,
    agent_id: str,
    event_type: EventType,
    message: str,
    run_id: Optional[str] = None,
    severity: Severity = Severity.INFO,
    data: Optional[Dict[str, Any]] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> AgentEvent:
    """Append one event and publish it to live subscribers."""
    event = AgentEvent(
        run_id=run_id,
        agent_id=agent_id,
        event_type=event_type.value,
        message=message,
        severity=severity,
        data=data,
    )
    session.add(event)
    session.commit()
    session.refresh(event)

    if broadcaster is not None:
        broadcaster.publish("agent_event", AgentEventOut.model_validate(event).to_json())
    return event


class RunRecorder:
    """Best-effort writes for the detached execution path."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self._session_factory = session_factory
        self.broadcaster = broadcaster

    def _persistence_failed(self, operation: str, error: Exception, **context: Any) -> None:
        wrapped = PersistenceError(f"{operation} failed: {error}", details=context)
        wrapped.__cause__ = error
        capture_exception(wrapped, context={"operation": operation, **context})

    def _publish_status(self, run_id: str, agent_id: str, status: RunStatus) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(
                "status_change",
                {"runId": run_id, "agentId": agent_id, "status": status.value},
            )

    def record_event(
        self,
        agent_id: str,
        event_type: EventType,
        message: str,
        run_id: Optional[str] = None,
        severity: Severity = Severity.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AgentEvent]:
        try:
            with self._session_factory() as session:
                return record_event(
                    session,
                    agent_id,
                    event_type,
                    message,
                    run_id=run_id,
                    severity=severity,
                    data=data,
                    broadcaster=self.broadcaster,
                )
        except Exception as e:
            self._persistence_failed(
                "record_event", e, run_id=run_id, agent_id=agent_id, event_type=event_type.value
            )
            return None

    def _update_run(self, run_id: str, allowed: tuple, values: Dict[str, Any]) -> bool:
        stmt = (
            update(AgentRun)
            .where(col(AgentRun.id) == run_id, col(AgentRun.status).in_(allowed))
            .values(**values)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount > 0

    def mark_running(self, run_id: str, agent_id: str) -> bool:
        try:
            changed = self._update_run(run_id, (RunStatus.PENDING,), {"status": RunStatus.RUNNING})
        except Exception as e:
            self._persistence_failed("mark_running", e, run_id=run_id, agent_id=agent_id)
            return False
        if changed:
            self._publish_status(run_id, agent_id, RunStatus.RUNNING)
        return changed

    def complete_run(
        self,
        run_id: str,
        agent_id: str,
        output_data: Optional[Any] = None,
        items_processed: int = 0,
        execution_time_ms: Optional[int] = None,
        retry_count: int = 0,
    ) -> bool:
        """Move an active run to success. False if it was already terminal or the write failed."""
        values = {
            "status": RunStatus.SUCCESS,
            "completed_at": datetime.now(timezone.utc),
            "output_data": output_data,
            "items_processed": items_processed,
            "execution_time_ms": execution_time_ms,
            "retry_count": retry_count,
        }
        try:
            changed = self._update_run(run_id, ACTIVE_STATUSES, values)
        except Exception as e:
            self._persistence_failed("complete_run", e, run_id=run_id, agent_id=agent_id)
            return False

        if changed:
            self._publish_status(run_id, agent_id, RunStatus.SUCCESS)
        else:
            logger.warning("Run already terminal, success not recorded", run_id=run_id, agent_id=agent_id)
        return changed

    def fail_run(
        self,
        run_id: str,
        agent_id: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        execution_time_ms: Optional[int] = None,
        retry_count: int = 0,
    ) -> bool:
        """Move an active run to failed. False if it was already terminal or the write failed."""
        values = {
            "status": RunStatus.FAILED,
            "completed_at": datetime.now(timezone.utc),
            "error_message": error_message,
            "error_details": error_details,
            "execution_time_ms": execution_time_ms,
            "retry_count": retry_count,
        }
        try:
            changed = self._update_run(run_id, ACTIVE_STATUSES, values)
        except Exception as e:
            self._persistence_failed("fail_run", e, run_id=run_id, agent_id=agent_id)
            return False

        if changed:
            self._publish_status(run_id, agent_id, RunStatus.FAILED)
        else:
            logger.warning("Run already terminal, failure not recorded", run_id=run_id, agent_id=agent_id)
        return changed

    def write_failure(
        self,
        run_id: str,
        agent_id: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        input_data: Optional[Any] = None,
    ) -> Optional[AgentFailure]:
        """Dead-letter a run that exhausted its retries."""
        try:
            with self._session_factory() as session:
                failure = AgentFailure(
                    run_id=run_id,
                    agent_id=agent_id,
                    error_message=error_message,
                    error_details=error_details,
                    input_data=input_data,
                )
                session.add(failure)
                session.commit()
                session.refresh(failure)
                logger.info("Run dead-lettered", run_id=run_id, agent_id=agent_id, failure_id=failure.id)
                return failure
        except Exception as e:
            self._persistence_failed("write_failure", e, run_id=run_id, agent_id=agent_id)
            return None


def make_circuit_event_listener(recorder: RunRecorder):
    """Circuit breaker listener that logs each transition as a circuit_breaker event."""

    def _on_state_change(agent_id: str, old_state: str, new_state: str, failures: int) -> None:
        severity = Severity.ERROR if new_state == "open" else Severity.INFO
        recorder.record_event(
            agent_id,
            EventType.CIRCUIT_BREAKER,
            f"Circuit breaker {old_state} -> {new_state}",
            severity=severity,
            data={"from": old_state, "to": new_state, "failures": failures},
        )
        if new_state == "open":
            capture_message(
                f"Circuit breaker opened for {agent_id}",
                level="warning",
                context={"agent_id": agent_id, "failures": failures},
                tags={"agent_id": agent_id},
            )

    return _on_state_change


__all__ = [
    "create_run",
    "queue_run",
    "get_run",
    "list_run_events",
    "record_event",
    "RunRecorder",
    "make_circuit_event_listener",
]
