"""
Admin circuit breaker controls.

Manual reset for agents stuck behind an open breaker, plus read-only status.
"""

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_breakers, get_executor
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.models.agent_event import EventType
from app.schemas import CircuitBreakerRequest
from app.services.executor import AgentExecutor

logger = structlog.get_logger(__name__)

router = APIRouter()

VALID_ACTIONS = ("reset", "status")


@router.post("/circuit-breaker")
def circuit_breaker_action(
    body: CircuitBreakerRequest,
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
    executor: AgentExecutor = Depends(get_executor),
):
    if not body.agent_id:
        raise HTTPException(status_code=400, detail="agentId is required")
    if body.action not in VALID_ACTIONS:
        raise HTTPException(status_code=400, detail='Invalid action. Use "reset" or "status"')

    agent_id = body.agent_id

    if body.action == "reset":
        previous = breakers.get_state(agent_id).value
        breakers.reset(agent_id, notify=False)
        executor.recorder.record_event(
            agent_id,
            EventType.CIRCUIT_BREAKER,
            f"Circuit breaker manually reset for {agent_id}",
            data={"from": previous, "to": "closed", "manual": True},
        )
        logger.info("Circuit breaker reset by operator", agent_id=agent_id, previous=previous)
        return {
            "success": True,
            "agentId": agent_id,
            "message": f"Circuit breaker reset for {agent_id}",
            "state": breakers.get_state(agent_id).value,
            "failures": breakers.get_failure_count(agent_id),
        }

    return {
        "success": True,
        "agentId": agent_id,
        "state": breakers.get_state(agent_id).value,
        "failures": breakers.get_failure_count(agent_id),
    }


@router.get("/circuit-breaker")
def circuit_breaker_states(breakers: CircuitBreakerRegistry = Depends(get_breakers)):
    circuits = {
        agent_id: {
            "state": snapshot["state"],
            "failures": snapshot["failures"],
            "lastFailure": snapshot["last_failure"],
        }
        for agent_id, snapshot in breakers.get_all_states().items()
    }
    return {"success": True, "circuits": circuits, "timestamp": datetime.now(timezone.utc).isoformat()}
