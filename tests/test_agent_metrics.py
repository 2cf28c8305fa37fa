"""
Tests for health and metrics calculations over agent_runs.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.agent_run import RunStatus
from app.services.agent_metrics import (
    calculate_agent_metrics,
    calculate_sla_metrics,
    determine_health_status,
    get_agent_health,
    percentile,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestPercentile:
    """Nearest-rank percentile."""

    def test_empty(self):
        """Empty input gives 0."""
        assert percentile([], 95) == 0

    def test_nearest_rank(self):
        """p50 and p95 of 1..100."""
        values = list(range(1, 101))
        assert percentile(values, 50) == 50
        assert percentile(values, 95) == 95
        assert percentile(values, 99) == 99

    def test_single_value(self):
        """Every percentile of one value is that value."""
        assert percentile([42], 1) == 42
        assert percentile([42], 99) == 42


class TestDetermineHealthStatus:
    """Health classification."""

    def test_unknown_without_runs(self):
        assert determine_health_status(0.0, None, None, NOW) == "unknown"

    def test_healthy(self):
        """High success rate, recent successful last run."""
        assert determine_health_status(96.0, "success", NOW - timedelta(hours=2), NOW) == "healthy"

    def test_failed_last_run_is_degraded(self):
        """A failed last run is never healthy."""
        assert determine_health_status(99.0, "failed", NOW - timedelta(hours=2), NOW) == "degraded"

    def test_stale_but_good_rate_is_degraded(self):
        """Older than 24h with a good success rate."""
        assert determine_health_status(96.0, "success", NOW - timedelta(hours=30), NOW) == "degraded"

    def test_recent_but_poor_rate_is_degraded(self):
        """Under 48h old keeps a poor agent degraded."""
        assert determine_health_status(50.0, "failed", NOW - timedelta(hours=40), NOW) == "degraded"

    def test_critical(self):
        """Poor rate and nothing in 48h."""
        assert determine_health_status(50.0, "failed", NOW - timedelta(hours=72), NOW) == "critical"

    def test_naive_timestamps_treated_as_utc(self):
        """SQLite round-trips drop tzinfo."""
        naive = (NOW - timedelta(hours=1)).replace(tzinfo=None)
        assert determine_health_status(100.0, "success", naive, NOW) == "healthy"


class TestGetAgentHealth:
    """Per-agent health rows."""

    def test_summary(self, test_session, factory):
        """Counts, rate, average and last run come from the agent's runs."""
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(hours=3), execution_time_ms=1000)
        factory.create_run(status=RunStatus.FAILED, started_at=NOW - timedelta(hours=2), execution_time_ms=3000)
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(hours=1), execution_time_ms=2000)

        [health] = get_agent_health(test_session, now=NOW)

        assert health["agentId"] == "agent_004_milestones"
        assert health["totalRuns"] == 3
        assert health["successfulRuns"] == 2
        assert health["failedRuns"] == 1
        assert health["successRate"] == 66.67
        assert health["avgExecutionTime"] == 2000
        assert health["lastRunStatus"] == "success"
        assert health["status"] == "degraded"

    def test_one_row_per_agent(self, test_session, factory):
        """Runs are grouped by agent."""
        factory.create_run(agent_id="agent_002_funding", started_at=NOW - timedelta(hours=1))
        factory.create_run(agent_id="agent_004_milestones", started_at=NOW - timedelta(hours=1))

        rows = get_agent_health(test_session, now=NOW)
        assert {row["agentId"] for row in rows} == {"agent_002_funding", "agent_004_milestones"}

    def test_filtered_agent_without_runs(self, test_session):
        """Asking for one agent with no runs returns an unknown row."""
        [health] = get_agent_health(test_session, agent_id="agent_001_policy", now=NOW)
        assert health["totalRuns"] == 0
        assert health["status"] == "unknown"


class TestCalculateAgentMetrics:
    """Detailed metrics for one agent."""

    def test_window_and_percentiles(self, test_session, factory):
        """Only runs inside the window count."""
        for index, ms in enumerate([100, 200, 300, 400, 5000]):
            factory.create_run(
                status=RunStatus.SUCCESS,
                started_at=NOW - timedelta(days=1, minutes=index),
                execution_time_ms=ms,
                items_processed=2,
            )
        factory.create_run(
            status=RunStatus.FAILED,
            started_at=NOW - timedelta(hours=1),
            execution_time_ms=None,
            error_message="upstream 502",
        )
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(days=30))

        metrics = calculate_agent_metrics(test_session, "agent_004_milestones", days=7, now=NOW)

        assert metrics["totalRuns"] == 6
        assert metrics["successfulRuns"] == 5
        assert metrics["failedRuns"] == 1
        assert metrics["successRate"] == 83.33
        assert metrics["errorRate"] == 16.67
        assert metrics["p50ExecutionTime"] == 300
        assert metrics["p95ExecutionTime"] == 5000
        assert metrics["itemsProcessed"] == 10
        assert metrics["lastRunStatus"] == "failed"
        assert metrics["recentErrors"][0]["message"] == "upstream 502"
        assert len(metrics["dailyRunCounts"]) == 7
        assert sum(day["count"] for day in metrics["dailyRunCounts"]) == 6

    def test_no_runs(self, test_session):
        """Empty windows give zeros, not errors."""
        metrics = calculate_agent_metrics(test_session, "agent_002_funding", days=7, now=NOW)
        assert metrics["totalRuns"] == 0
        assert metrics["successRate"] == 0.0
        assert metrics["p95ExecutionTime"] == 0
        assert metrics["lastRunAt"] is None


class TestCalculateSlaMetrics:
    """Formatted service-level summary."""

    def test_formatting(self, test_session, factory):
        """Strings carry units; totals are raw numbers."""
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(hours=1), execution_time_ms=1500)
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(hours=2), execution_time_ms=2500)
        factory.create_run(status=RunStatus.SUCCESS, started_at=NOW - timedelta(hours=3), execution_time_ms=2000)
        factory.create_run(status=RunStatus.FAILED, started_at=NOW - timedelta(hours=4), execution_time_ms=2000)

        sla = calculate_sla_metrics(test_session, days=7, now=NOW)

        assert sla["uptime"] == "75.00%"
        assert sla["errorRate"] == "25.00%"
        assert sla["avgResponseTime"] == "2.00s"
        assert sla["p95Latency"] == "2.50s"
        assert sla["totalRuns"] == 4
        assert sla["dailyRuns"] == 1
        assert sla["timeRange"] == "7 days"

    @pytest.mark.parametrize("days", [1, 30])
    def test_empty(self, test_session, days):
        """No runs: zero strings."""
        sla = calculate_sla_metrics(test_session, days=days, now=NOW)
        assert sla["uptime"] == "0.00%"
        assert sla["timeRange"] == f"{days} days"
