"""
In-process scheduler for periodic agent runs.

Enabled with RUN_SCHEDULER. Each id in SCHEDULED_AGENTS gets an interval job
that queues a run (trigger type "scheduled") and executes it through the same
executor as HTTP triggers, so the circuit breaker and retries apply.
"""

from typing import Callable, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from app.core.config import settings
from app.models.agent_run import TriggerType
from app.services.agent_registry import is_agent_available
from app.services.event_stream import EventBroadcaster
from app.services.executor import AgentExecutor, run_in_background
from app.services.run_store import queue_run

logger = structlog.get_logger(__name__)

scheduler = AsyncIOScheduler()


async def job_run_agent(
    agent_id: str,
    executor: AgentExecutor,
    session_factory: Callable[[], Session],
    broadcaster: Optional[EventBroadcaster] = None,
):
    """Queue and execute one scheduled run. Never raises."""
    if not is_agent_available(agent_id):
        logger.warning("Scheduled agent unavailable, skipping", agent_id=agent_id)
        return None

    try:
        with session_factory() as session:
            run = queue_run(
                session,
                agent_id,
                triggered_by="scheduler",
                trigger_type=TriggerType.SCHEDULED,
                broadcaster=broadcaster,
            )
            run_id = run.id
    except Exception as e:
        logger.error("Failed to queue scheduled run", agent_id=agent_id, error=str(e))
        return None

    return await run_in_background(executor, agent_id, run_id, TriggerType.SCHEDULED)


def schedule_agent_jobs(
    target: AsyncIOScheduler,
    executor: AgentExecutor,
    session_factory: Callable[[], Session],
    broadcaster: Optional[EventBroadcaster] = None,
    agent_ids: Optional[List[str]] = None,
    interval_minutes: Optional[int] = None,
) -> List[str]:
    """Register one interval job per agent. Returns the job ids."""
    agent_ids = agent_ids if agent_ids is not None else settings.SCHEDULED_AGENTS
    interval = interval_minutes or settings.SCHEDULE_INTERVAL_MINUTES

    # Job configuration for durability:
    # - max_instances=1: a slow run never overlaps the next one
    # - misfire_grace_time: late by less than half an interval still runs
    # - coalesce=True: missed runs collapse into one
    job_ids = []
    for agent_id in agent_ids:
        job_id = f"job_run_{agent_id}"
        target.add_job(
            job_run_agent,
            IntervalTrigger(minutes=interval),
            args=[agent_id, executor, session_factory, broadcaster],
            id=job_id,
            max_instances=1,
            misfire_grace_time=max(60, interval * 30),
            coalesce=True,
            replace_existing=True,
        )
        job_ids.append(job_id)
    return job_ids


def start_scheduler(
    executor: AgentExecutor,
    session_factory: Callable[[], Session],
    broadcaster: Optional[EventBroadcaster] = None,
) -> List[str]:
    job_ids = schedule_agent_jobs(scheduler, executor, session_factory, broadcaster)
    scheduler.start()
    logger.info(
        "Scheduler started",
        jobs=job_ids,
        interval_minutes=settings.SCHEDULE_INTERVAL_MINUTES,
    )
    return job_ids


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
