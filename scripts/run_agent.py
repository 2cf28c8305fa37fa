#!/usr/bin/env python3
"""
Run one agent in the foreground, through the circuit breaker and retries.

Creates a run row (trigger type "manual", triggered by "cli"), executes it and
prints the final run status with its events.

Usage:
    # Run the milestone tracker
    python scripts/run_agent.py agent_004_milestones

    # Pass input data as JSON
    python scripts/run_agent.py agent_001_policy --input '{"policies": [...]}'

    # No retries
    python scripts/run_agent.py agent_002_funding --max-retries 1

Environment:
    DATABASE_URL: Database connection string
"""

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI

from app import db
from app.core.config import settings
from app.core.exceptions import AgentOpsError
from app.main import build_components
from app.models.agent_run import TriggerType
from app.services.agent_registry import get_all_agents, is_agent_available
from app.services.executor import RetryPolicy
from app.services.run_store import get_run, list_run_events, queue_run


async def main():
    parser = argparse.ArgumentParser(description="Run one agent in the foreground")
    parser.add_argument("agent_id", nargs="?", help="Agent id, e.g. agent_004_milestones")
    parser.add_argument("--input", type=str, default=None, help="JSON input data for the agent")
    parser.add_argument("--max-retries", type=int, default=None, help="Override AGENT_MAX_RETRIES")
    parser.add_argument("--list", action="store_true", help="List registered agents and exit")
    args = parser.parse_args()

    if args.list or not args.agent_id:
        for agent in get_all_agents():
            available = "available" if is_agent_available(agent.id) else "unavailable"
            print(f"{agent.id:<24} {agent.name:<28} {available}")
        return 0

    if not db.is_configured():
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    input_data = None
    if args.input:
        try:
            input_data = json.loads(args.input)
        except json.JSONDecodeError as e:
            print(f"ERROR: --input is not valid JSON: {e}")
            return 1

    policy = RetryPolicy.from_settings(settings)
    if args.max_retries is not None:
        policy = replace(policy, max_retries=max(1, args.max_retries))

    host = FastAPI()
    executor = build_components(host, db.session_factory, retry_policy=policy)

    with db.session_factory() as session:
        run = queue_run(session, args.agent_id, triggered_by="cli", trigger_type=TriggerType.MANUAL, input_data=input_data)
        run_id = run.id

    print(f"=== Running {args.agent_id} (run {run_id}) ===")
    exit_code = 0
    try:
        output = await executor.execute_with_circuit_breaker(args.agent_id, run_id, TriggerType.MANUAL, input_data)
        print(f"Items processed: {output.items_processed}")
    except AgentOpsError as e:
        print(f"Run failed: {e.message}")
        exit_code = 1

    with db.session_factory() as session:
        run = get_run(session, run_id)
        print(f"Status: {run.status.value if run else 'unknown'}")
        for event in list_run_events(session, run_id):
            print(f"  [{event.severity.value}] {event.event_type}: {event.message}")

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
