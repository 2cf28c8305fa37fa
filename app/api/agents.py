"""
Agent trigger, run status, health and metrics endpoints.

Triggers answer as soon as the run row exists; execution happens in a
background task and its outcome is read back from the run and its events.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.api.deps import get_breakers, get_broadcaster, get_executor, verify_cron_secret
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import settings
from app.db import get_session
from app.models.agent_run import TERMINAL_STATUSES, TriggerType
from app.schemas import AgentEventOut, AgentRunWithEvents, TriggerRequest
from app.services.agent_metrics import calculate_agent_metrics, calculate_sla_metrics, get_agent_health
from app.services.agent_registry import (
    AgentConfig,
    get_agent_config,
    get_all_agents,
    is_agent_available,
    validate_agent_environment,
)
from app.services.event_stream import EventBroadcaster
from app.services.executor import AgentExecutor, run_in_background
from app.services.run_store import get_run, list_run_events, queue_run

logger = structlog.get_logger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_available(agent_id: Optional[str]) -> AgentConfig:
    if not agent_id:
        raise HTTPException(status_code=400, detail="agentId is required")
    config = get_agent_config(agent_id)
    if config is None:
        raise HTTPException(status_code=400, detail=f"Unknown agent: {agent_id}")
    if not config.enabled:
        raise HTTPException(status_code=400, detail=f"Agent {agent_id} is disabled")
    valid, missing = validate_agent_environment(agent_id)
    if not valid:
        raise HTTPException(
            status_code=400,
            detail=f"Agent {agent_id} is not available, missing settings: {', '.join(missing)}",
        )
    return config


def _queue(
    session: Session,
    background_tasks: BackgroundTasks,
    executor: AgentExecutor,
    broadcaster: EventBroadcaster,
    agent_id: str,
    triggered_by: str,
    trigger_type: TriggerType,
    input_data=None,
):
    try:
        run = queue_run(session, agent_id, triggered_by, trigger_type, input_data, broadcaster)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to create run", agent_id=agent_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create agent run")

    background_tasks.add_task(run_in_background, executor, agent_id, run.id, trigger_type, input_data)
    return run


@router.get("")
def list_agents():
    """Registered agents with availability."""
    agents = []
    for config in get_all_agents():
        valid, missing = validate_agent_environment(config.id)
        agents.append(
            {
                "agentId": config.id,
                "name": config.name,
                "description": config.description,
                "enabled": config.enabled,
                "autonomyLevel": config.autonomy_level,
                "available": config.enabled and valid,
                "missing": missing,
            }
        )
    return {"success": True, "agents": agents, "count": len(agents)}


@router.post("/trigger")
def trigger_agent(
    body: TriggerRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    executor: AgentExecutor = Depends(get_executor),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    """
    Queue an agent run and return its id immediately.

    The run starts pending; poll GET /agents/runs/{runId} or listen on
    /agents/stream for progress.
    """
    config = _require_available(body.agent_id)
    run = _queue(
        session,
        background_tasks,
        executor,
        broadcaster,
        config.id,
        body.triggered_by,
        TriggerType.MANUAL,
        body.input_data,
    )
    return {
        "success": True,
        "runId": run.id,
        "status": "pending",
        "message": f"{config.name} queued for execution",
    }


@router.get("/trigger")
def check_agent(agent_id: Optional[str] = Query(default=None, alias="agentId")):
    """Whether an agent can be triggered right now."""
    if not agent_id:
        raise HTTPException(status_code=400, detail="agentId is required")
    config = get_agent_config(agent_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Agent not found")

    valid, missing = validate_agent_environment(agent_id)
    return {
        "available": config.enabled and valid,
        "agentId": config.id,
        "name": config.name,
        "enabled": config.enabled,
        "missing": missing,
    }


@router.get("/cron", dependencies=[Depends(verify_cron_secret)])
def cron_trigger(
    background_tasks: BackgroundTasks,
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    session: Session = Depends(get_session),
    executor: AgentExecutor = Depends(get_executor),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    """
    Scheduled trigger for an external cron.

    With agentId: queue that agent. Without: queue every SCHEDULED_AGENTS
    entry that is currently available.
    """
    if agent_id:
        configs = [_require_available(agent_id)]
        skipped = []
    else:
        configs = []
        skipped = []
        for scheduled_id in settings.SCHEDULED_AGENTS:
            config = get_agent_config(scheduled_id)
            if config and is_agent_available(scheduled_id):
                configs.append(config)
            else:
                skipped.append(scheduled_id)

    runs = []
    for config in configs:
        run = _queue(session, background_tasks, executor, broadcaster, config.id, "cron", TriggerType.SCHEDULED)
        runs.append({"agentId": config.id, "runId": run.id})

    if skipped:
        logger.warning("Scheduled agents skipped", skipped=skipped)
    return {"success": True, "runs": runs, "skipped": skipped, "timestamp": _now()}


@router.get("/runs/{run_id}")
def read_run(run_id: str, session: Session = Depends(get_session)):
    run = get_run(session, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    events = [AgentEventOut.model_validate(e) for e in list_run_events(session, run_id)]
    payload = AgentRunWithEvents.model_validate(run)
    payload.events = events
    return payload.to_json()


@router.post("/runs/{run_id}/cancel")
def cancel_run(
    run_id: str,
    session: Session = Depends(get_session),
    executor: AgentExecutor = Depends(get_executor),
):
    """Request cancellation; honoured before the run's next attempt."""
    run = get_run(session, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")

    executor.request_cancel(run_id)
    return {"success": True, "runId": run_id, "message": "Cancellation requested"}


@router.get("/health")
def agents_health(
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    session: Session = Depends(get_session),
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
):
    """Registry merged with run health and circuit breaker state."""
    if agent_id and get_agent_config(agent_id) is None:
        raise HTTPException(status_code=404, detail="Agent not found")

    health_by_agent = {row["agentId"]: row for row in get_agent_health(session, agent_id)}
    circuits = breakers.get_all_states()

    agents = []
    for config in get_all_agents():
        if agent_id and config.id != agent_id:
            continue
        circuit = circuits.get(config.id, {"state": "closed", "failures": 0, "last_failure": None})
        health = health_by_agent.get(config.id) or {
            "agentId": config.id,
            "totalRuns": 0,
            "successfulRuns": 0,
            "failedRuns": 0,
            "successRate": 0.0,
            "avgExecutionTime": 0,
            "lastRunAt": None,
            "lastRunStatus": None,
            "status": "unknown",
        }
        agents.append(
            {
                "agentId": config.id,
                "name": config.name,
                "enabled": config.enabled,
                "autonomyLevel": config.autonomy_level,
                "health": health,
                "circuitBreaker": {
                    "state": circuit["state"],
                    "failures": circuit["failures"],
                    "lastFailure": circuit["last_failure"],
                },
            }
        )

    return {"success": True, "timestamp": _now(), "agents": agents}


@router.get("/sla")
def sla_metrics(
    days: int = Query(default=7, ge=1, le=90),
    session: Session = Depends(get_session),
):
    return {"success": True, "sla": calculate_sla_metrics(session, days), "timestamp": _now()}


@router.get("/{agent_id}/metrics")
def agent_metrics(
    agent_id: str,
    days: int = Query(default=7, ge=1, le=90),
    session: Session = Depends(get_session),
):
    if get_agent_config(agent_id) is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return {
        "success": True,
        "agentId": agent_id,
        "metrics": calculate_agent_metrics(session, agent_id, days),
        "timestamp": _now(),
    }
