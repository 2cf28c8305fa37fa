"""
Agent metrics computed from the agent_runs table.

All functions are pure reads. Rates are percentages rounded to two places,
durations are milliseconds unless the key says otherwise.
"""

import math
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from app.core.typing import as_utc, col
from app.models.agent_run import AgentRun, RunStatus

HEALTHY_SUCCESS_RATE = 95.0
DEGRADED_SUCCESS_RATE = 80.0
HEALTHY_MAX_AGE = timedelta(hours=24)
DEGRADED_MAX_AGE = timedelta(hours=48)


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending sequence (0 when empty)."""
    if not sorted_values:
        return 0
    index = math.ceil((pct / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def determine_health_status(
    success_rate: float,
    last_run_status: Optional[str],
    last_run_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> str:
    """
    healthy  - success rate >= 95, last run succeeded, last run < 24h ago
    degraded - success rate >= 80, or last run < 48h ago
    critical - otherwise
    unknown  - no runs
    """
    if last_run_at is None:
        return "unknown"

    now = now or datetime.now(timezone.utc)
    age = now - as_utc(last_run_at)

    if (
        success_rate >= HEALTHY_SUCCESS_RATE
        and last_run_status == RunStatus.SUCCESS.value
        and age < HEALTHY_MAX_AGE
    ):
        return "healthy"
    if success_rate >= DEGRADED_SUCCESS_RATE or age < DEGRADED_MAX_AGE:
        return "degraded"
    return "critical"


def _summarize(agent_id: str, runs: List[AgentRun], now: datetime) -> Dict[str, Any]:
    # runs are newest first
    total = len(runs)
    successful = sum(1 for r in runs if r.status == RunStatus.SUCCESS)
    failed = sum(1 for r in runs if r.status == RunStatus.FAILED)
    times = [r.execution_time_ms for r in runs if r.execution_time_ms is not None]
    success_rate = _rate(successful, total)
    last_run = runs[0] if runs else None
    last_run_at = as_utc(last_run.started_at) if last_run else None
    last_run_status = last_run.status.value if last_run else None

    return {
        "agentId": agent_id,
        "totalRuns": total,
        "successfulRuns": successful,
        "failedRuns": failed,
        "successRate": success_rate,
        "avgExecutionTime": round(sum(times) / len(times)) if times else 0,
        "lastRunAt": last_run_at.isoformat() if last_run_at else None,
        "lastRunStatus": last_run_status,
        "status": determine_health_status(success_rate, last_run_status, last_run_at, now),
    }


def get_agent_health(
    session: Session,
    agent_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Health summary per agent that has runs (or for agent_id, even without runs)."""
    now = now or datetime.now(timezone.utc)
    stmt = select(AgentRun)
    if agent_id:
        stmt = stmt.where(col(AgentRun.agent_id) == agent_id)
    stmt = stmt.order_by(col(AgentRun.started_at).desc())

    by_agent: "OrderedDict[str, List[AgentRun]]" = OrderedDict()
    if agent_id:
        by_agent[agent_id] = []
    for run in session.exec(stmt).all():
        by_agent.setdefault(run.agent_id, []).append(run)

    return [_summarize(aid, runs, now) for aid, runs in by_agent.items()]


def _runs_since(session: Session, since: datetime, agent_id: Optional[str] = None) -> List[AgentRun]:
    stmt = select(AgentRun).where(col(AgentRun.started_at) >= since)
    if agent_id:
        stmt = stmt.where(col(AgentRun.agent_id) == agent_id)
    stmt = stmt.order_by(col(AgentRun.started_at).desc())
    return list(session.exec(stmt).all())


def _daily_trend(runs: List[AgentRun], days: int, now: datetime) -> List[Dict[str, Any]]:
    daily: Dict[str, Dict[str, int]] = {}
    for offset in range(days):
        day = (now - timedelta(days=offset)).date().isoformat()
        daily[day] = {"count": 0, "successes": 0, "failures": 0}

    for run in runs:
        day = as_utc(run.started_at).date().isoformat()
        bucket = daily.setdefault(day, {"count": 0, "successes": 0, "failures": 0})
        bucket["count"] += 1
        if run.status == RunStatus.SUCCESS:
            bucket["successes"] += 1
        elif run.status == RunStatus.FAILED:
            bucket["failures"] += 1

    return [{"date": day, **stats} for day, stats in sorted(daily.items())]


def calculate_agent_metrics(
    session: Session,
    agent_id: str,
    days: int = 7,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    runs = _runs_since(session, now - timedelta(days=days), agent_id)

    total = len(runs)
    successful = sum(1 for r in runs if r.status == RunStatus.SUCCESS)
    failed = sum(1 for r in runs if r.status == RunStatus.FAILED)
    times = sorted(r.execution_time_ms for r in runs if r.execution_time_ms is not None)
    last_run = runs[0] if runs else None

    return {
        "agentId": agent_id,
        "timeRangeDays": days,
        "totalRuns": total,
        "successfulRuns": successful,
        "failedRuns": failed,
        "successRate": _rate(successful, total),
        "errorRate": _rate(failed, total),
        "avgExecutionTime": round(sum(times) / len(times)) if times else 0,
        "p50ExecutionTime": round(percentile(times, 50)),
        "p95ExecutionTime": round(percentile(times, 95)),
        "p99ExecutionTime": round(percentile(times, 99)),
        "itemsProcessed": sum(r.items_processed or 0 for r in runs),
        "runsPerDay": round(total / days, 2) if days else 0,
        "lastRunAt": as_utc(last_run.started_at).isoformat() if last_run else None,
        "lastRunStatus": last_run.status.value if last_run else None,
        "recentRuns": [
            {
                "id": r.id,
                "status": r.status.value,
                "startedAt": as_utc(r.started_at).isoformat(),
                "completedAt": as_utc(r.completed_at).isoformat() if r.completed_at else None,
                "executionTime": r.execution_time_ms,
                "itemsProcessed": r.items_processed,
            }
            for r in runs[:10]
        ],
        "recentErrors": [
            {
                "id": r.id,
                "timestamp": as_utc(r.started_at).isoformat(),
                "message": r.error_message,
            }
            for r in runs
            if r.status == RunStatus.FAILED
        ][:5],
        "dailyRunCounts": _daily_trend(runs, days, now),
    }


def calculate_sla_metrics(
    session: Session,
    days: int = 7,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Service-level summary across all agents, formatted for display."""
    now = now or datetime.now(timezone.utc)
    runs = _runs_since(session, now - timedelta(days=days))

    total = len(runs)
    successful = sum(1 for r in runs if r.status == RunStatus.SUCCESS)
    failed = sum(1 for r in runs if r.status == RunStatus.FAILED)
    times = sorted(r.execution_time_ms for r in runs if r.execution_time_ms is not None)
    avg_ms = sum(times) / len(times) if times else 0

    uptime = successful / total * 100 if total else 0
    error_rate = failed / total * 100 if total else 0

    return {
        "uptime": f"{uptime:.2f}%",
        "avgResponseTime": f"{avg_ms / 1000:.2f}s",
        "errorRate": f"{error_rate:.2f}%",
        "p95Latency": f"{percentile(times, 95) / 1000:.2f}s",
        "dailyRuns": round(total / days) if days else 0,
        "totalRuns": total,
        "timeRange": f"{days} days",
    }


__all__ = [
    "percentile",
    "determine_health_status",
    "get_agent_health",
    "calculate_agent_metrics",
    "calculate_sla_metrics",
]
