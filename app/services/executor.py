"""
Agent Executor

Runs one agent run under the circuit breaker with exponential-backoff retries.

    breaker open  -> run failed ("circuit breaker open"), circuit_breaker_blocked
                     event, CircuitOpenError; the agent is never invoked
    attempt fails -> one "retried" event, breaker failure recorded, sleep
                     min(initial * multiplier**(attempt-1), max) and try again
                     (unless attempts are used up or the breaker opened)
    attempt ok    -> one "attempt_succeeded" event, breaker success, run
                     success, "succeeded" event, output returned
    exhausted     -> run failed, "failed" event, dead-letter row,
                     AgentExecutionError

Datastore writes go through RunRecorder and never raise, so a failing
datastore cannot hide the agent outcome.

Usage:
    executor = AgentExecutor(breakers, recorder, resolve_agent)
    output = await executor.execute_with_circuit_breaker(agent_id, run_id)

    # From a request handler (response already sent)
    background_tasks.add_task(run_in_background, executor, agent_id, run_id)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

import structlog

from app.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from app.core.config import Settings, settings as default_settings
from app.core.context import set_run_context
from app.core.errors import capture_exception
from app.core.exceptions import (
    AgentExecutionError,
    AgentOpsError,
    CircuitOpenError,
    RunCancelledError,
)
from app.models.agent_event import EventType, Severity
from app.models.agent_run import TriggerType
from app.services.agents import Agent, AgentInput, AgentOutput
from app.services.run_store import RunRecorder

logger = structlog.get_logger(__name__)

AgentResolver = Callable[[str], Agent]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0  # 1.0 gives a fixed delay

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "RetryPolicy":
        return cls(
            max_retries=config.AGENT_MAX_RETRIES,
            initial_delay_ms=config.RETRY_INITIAL_DELAY_MS,
            max_delay_ms=config.RETRY_MAX_DELAY_MS,
            backoff_multiplier=config.RETRY_BACKOFF_MULTIPLIER,
        )

    def delay_ms(self, attempt: int) -> int:
        """Delay after failed attempt number `attempt` (1-based)."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return int(min(delay, self.max_delay_ms))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class AgentExecutor:
    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        recorder: RunRecorder,
        resolve_agent: AgentResolver,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breakers = breakers
        self.recorder = recorder
        self.resolve_agent = resolve_agent
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._cancel_requested: Set[str] = set()

    def request_cancel(self, run_id: str) -> None:
        """Ask a run to stop. Honoured before its next attempt starts."""
        self._cancel_requested.add(run_id)
        logger.info("Run cancellation requested", run_id=run_id)

    def is_cancel_requested(self, run_id: str) -> bool:
        return run_id in self._cancel_requested

    def _block(self, agent_id: str, run_id: str, start: float) -> CircuitOpenError:
        state = self.breakers.get_state(agent_id).value
        failures = self.breakers.get_failure_count(agent_id)
        details = {"state": state, "failures": failures}

        self.recorder.fail_run(run_id, agent_id, "circuit breaker open", details, _elapsed_ms(start))
        self.recorder.record_event(
            agent_id,
            EventType.CIRCUIT_BLOCKED,
            f"Agent execution blocked by circuit breaker ({failures} recent failures)",
            run_id=run_id,
            severity=Severity.WARNING,
            data=details,
        )
        logger.warning("Run blocked by circuit breaker", state=state, failures=failures)
        return CircuitOpenError(agent_id, state, failures)

    def _cancel(self, agent_id: str, run_id: str, attempts: int, start: float) -> RunCancelledError:
        self.recorder.fail_run(
            run_id, agent_id, "cancelled", {"attempts": attempts}, _elapsed_ms(start), retry_count=attempts
        )
        self.recorder.record_event(
            agent_id,
            EventType.CANCELLED,
            f"Run cancelled after {attempts} attempt(s)",
            run_id=run_id,
            severity=Severity.WARNING,
            data={"attempts": attempts},
        )
        logger.info("Run cancelled", attempts=attempts)
        return RunCancelledError(f"Run {run_id} cancelled", details={"run_id": run_id, "attempts": attempts})

    async def execute_with_circuit_breaker(
        self,
        agent_id: str,
        run_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        input_data: Optional[Any] = None,
    ) -> AgentOutput:
        set_run_context(run_id, agent_id)
        with structlog.contextvars.bound_contextvars(run_id=run_id, agent_id=agent_id):
            try:
                return await self._execute(agent_id, run_id, trigger_type, input_data)
            finally:
                self._cancel_requested.discard(run_id)

    async def _execute(
        self,
        agent_id: str,
        run_id: str,
        trigger_type: TriggerType,
        input_data: Optional[Any],
    ) -> AgentOutput:
        start = time.monotonic()
        policy = self.retry_policy

        if not self.breakers.can_execute(agent_id):
            raise self._block(agent_id, run_id, start)

        self.recorder.mark_running(run_id, agent_id)
        self.recorder.record_event(
            agent_id,
            EventType.STARTED,
            f"Agent {agent_id} execution started",
            run_id=run_id,
            data={"trigger": trigger_type.value, "maxRetries": policy.max_retries},
        )

        try:
            agent = self.resolve_agent(agent_id)
        except AgentOpsError as e:
            self.recorder.fail_run(run_id, agent_id, e.message, e.details, _elapsed_ms(start))
            self.recorder.record_event(
                agent_id,
                EventType.FAILED,
                f"Agent {agent_id} could not be loaded: {e.message}",
                run_id=run_id,
                severity=Severity.ERROR,
                data=e.details,
            )
            raise

        agent_input = AgentInput(trigger=trigger_type.value, data=input_data, context={"run_id": run_id})
        last_error = "Agent execution failed"
        last_exception: Optional[BaseException] = None
        attempts = 0

        for attempt in range(1, policy.max_retries + 1):
            if self.is_cancel_requested(run_id):
                raise self._cancel(agent_id, run_id, attempts, start)

            attempts = attempt
            output: Optional[AgentOutput] = None
            error: Optional[str] = None
            try:
                output = await agent.execute(agent_input)
                if not output.success:
                    error = "; ".join(output.errors) or "Agent reported failure"
            except asyncio.CancelledError:
                self.recorder.fail_run(
                    run_id, agent_id, "cancelled", {"attempts": attempt}, _elapsed_ms(start), retry_count=attempt
                )
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                last_exception = e

            if output is not None and error is None:
                return self._succeed(agent_id, run_id, output, attempt, start)

            last_error = error or last_error
            self.breakers.record_failure(agent_id)
            breaker_open = self.breakers.get_state(agent_id) == CircuitState.OPEN
            will_retry = attempt < policy.max_retries and not breaker_open
            delay_ms = policy.delay_ms(attempt) if will_retry else 0

            self.recorder.record_event(
                agent_id,
                EventType.RETRIED,
                f"Attempt {attempt}/{policy.max_retries} failed: {last_error}",
                run_id=run_id,
                severity=Severity.WARNING,
                data={
                    "attempt": attempt,
                    "maxRetries": policy.max_retries,
                    "error": last_error,
                    "willRetry": will_retry,
                    "delayMs": delay_ms,
                },
            )
            logger.warning("Attempt failed", attempt=attempt, error=last_error, will_retry=will_retry)

            if breaker_open and attempt < policy.max_retries:
                logger.warning("Circuit opened during run, abandoning remaining attempts", attempt=attempt)
            if not will_retry:
                break
            await self._sleep(delay_ms / 1000)

        elapsed = _elapsed_ms(start)
        details = {
            "attempts": attempts,
            "error": last_error,
            "circuitState": self.breakers.get_state(agent_id).value,
        }
        self.recorder.fail_run(run_id, agent_id, last_error, details, elapsed, retry_count=attempts)
        self.recorder.record_event(
            agent_id,
            EventType.FAILED,
            f"All {attempts} attempt(s) failed: {last_error}",
            run_id=run_id,
            severity=Severity.ERROR,
            data=details,
        )
        self.recorder.write_failure(run_id, agent_id, last_error, details, input_data)
        raise AgentExecutionError(agent_id, attempts, last_exception or RuntimeError(last_error))

    def _succeed(
        self,
        agent_id: str,
        run_id: str,
        output: AgentOutput,
        attempt: int,
        start: float,
    ) -> AgentOutput:
        self.recorder.record_event(
            agent_id,
            EventType.ATTEMPT_SUCCEEDED,
            f"Attempt {attempt}/{self.retry_policy.max_retries} succeeded",
            run_id=run_id,
            data={"attempt": attempt},
        )
        self.breakers.record_success(agent_id)

        elapsed = _elapsed_ms(start)
        self.recorder.complete_run(
            run_id,
            agent_id,
            output_data=output.to_dict(),
            items_processed=output.items_processed,
            execution_time_ms=elapsed,
            retry_count=attempt - 1,
        )
        self.recorder.record_event(
            agent_id,
            EventType.SUCCEEDED,
            f"Agent {agent_id} completed in {elapsed}ms",
            run_id=run_id,
            data={
                "attempts": attempt,
                "executionTimeMs": elapsed,
                "itemsProcessed": output.items_processed,
                "requiresReview": output.requires_review,
            },
        )
        logger.info("Run completed", attempts=attempt, execution_time_ms=elapsed)
        return output


async def run_in_background(
    executor: AgentExecutor,
    agent_id: str,
    run_id: str,
    trigger_type: TriggerType = TriggerType.MANUAL,
    input_data: Optional[Any] = None,
) -> Optional[AgentOutput]:
    """
    Detached execution boundary. Never raises; the outcome lives on the run.
    """
    try:
        return await executor.execute_with_circuit_breaker(agent_id, run_id, trigger_type, input_data)
    except CircuitOpenError as e:
        logger.warning("Detached run blocked", run_id=run_id, agent_id=agent_id, state=e.state)
    except RunCancelledError:
        logger.info("Detached run cancelled", run_id=run_id, agent_id=agent_id)
    except AgentExecutionError as e:
        logger.error("Detached run failed", run_id=run_id, agent_id=agent_id, attempts=e.attempts, error=str(e.cause))
    except AgentOpsError as e:
        logger.error("Detached run rejected", run_id=run_id, agent_id=agent_id, error=e.message)
    except Exception as e:
        capture_exception(e, context={"run_id": run_id, "agent_id": agent_id, "operation": "run_in_background"})
    return None


__all__ = ["AgentExecutor", "RetryPolicy", "AgentResolver", "run_in_background"]
