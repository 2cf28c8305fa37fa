"""
Service health check.

Aggregates datastore connectivity, circuit breaker states and the dead-letter
backlog into one status for GET /health.

Usage:
    from app.core.health_check import HealthCheck

    health = HealthCheck.check_overall_health(breakers)
    # Returns: {"status": "ok", "components": {...}}
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Literal

import structlog
from sqlalchemy import text
from sqlmodel import Session, func, select

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import settings

logger = structlog.get_logger(__name__)

__all__ = ["HealthCheck", "Threshold", "check_threshold", "ThresholdStatus"]

ThresholdStatus = Literal["ok", "warning", "critical"]


@dataclass(frozen=True)
class Threshold:
    warning: float
    critical: float
    unit: str = ""


def check_threshold(value: float, threshold: Threshold) -> ThresholdStatus:
    if value >= threshold.critical:
        return "critical"
    elif value >= threshold.warning:
        return "warning"
    return "ok"


DB_CONNECTION_TIME_MS = Threshold(warning=500, critical=2000, unit="ms")
UNRESOLVED_FAILURES = Threshold(warning=5, critical=25, unit="runs")


class HealthCheck:
    """
    Each check returns:
    - status: "ok", "warning", or "critical"
    - Additional context for debugging
    """

    @staticmethod
    def check_circuit_health(breakers: CircuitBreakerRegistry) -> Dict[str, Any]:
        """Open circuit = critical, half-open = warning."""
        states = breakers.get_all_states()

        open_circuits = [name for name, s in states.items() if s["state"] == "open"]
        half_open_circuits = [name for name, s in states.items() if s["state"] == "half_open"]

        status: ThresholdStatus = "ok"
        if open_circuits:
            status = "critical"
        elif half_open_circuits:
            status = "warning"

        return {
            "status": status,
            "open_circuits": open_circuits,
            "half_open_circuits": half_open_circuits,
            "total_circuits": len(states),
        }

    @staticmethod
    def check_database_health() -> Dict[str, Any]:
        """SELECT 1 plus the unresolved dead-letter count."""
        from app import db
        from app.models.agent_failure import AgentFailure

        if not db.is_configured():
            return {"status": "critical", "configured": False, "reason": "Datastore not configured"}

        try:
            start = time.perf_counter()
            with Session(db.get_engine()) as session:
                session.execute(text("SELECT 1"))
                unresolved = session.exec(
                    select(func.count()).select_from(AgentFailure).where(AgentFailure.resolved == False)  # noqa: E712
                ).one()
            duration_ms = (time.perf_counter() - start) * 1000
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"status": "critical", "configured": True, "reason": f"Database error: {str(e)}"}

        statuses = [
            check_threshold(duration_ms, DB_CONNECTION_TIME_MS),
            check_threshold(unresolved, UNRESOLVED_FAILURES),
        ]
        status: ThresholdStatus = "ok"
        if "critical" in statuses:
            status = "critical"
        elif "warning" in statuses:
            status = "warning"

        return {
            "status": status,
            "configured": True,
            "connection_time_ms": round(duration_ms, 1),
            "unresolved_failures": unresolved,
        }

    @staticmethod
    def check_overall_health(breakers: CircuitBreakerRegistry) -> Dict[str, Any]:
        """
        Worst status across components.

        HTTP status should be 200 for "ok" and "warning", 503 for "critical".
        """
        circuits = HealthCheck.check_circuit_health(breakers)
        database = HealthCheck.check_database_health()

        all_statuses = [circuits["status"], database["status"]]
        if "critical" in all_statuses:
            overall_status = "critical"
        elif "warning" in all_statuses:
            overall_status = "warning"
        else:
            overall_status = "ok"

        return {
            "status": overall_status,
            "environment": settings.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "circuits": circuits,
                "database": database,
            },
        }
