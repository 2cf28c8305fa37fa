"""
Agent registry.

Static configuration for every agent the service can run, plus the checks the
trigger endpoint uses before accepting a run. Required settings are names of
Settings attributes; an empty value counts as missing.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type

from sqlmodel import Session

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import AgentUnavailableError, NotFoundError
from app.services.agents import Agent, FundingAgent, MilestoneTrackerAgent, PolicyMonitorAgent
from app.services.event_stream import EventBroadcaster


@dataclass(frozen=True)
class AgentConfig:
    id: str
    name: str
    description: str
    agent_class: Type[Agent]
    required_settings: Tuple[str, ...] = ()
    enabled: bool = True
    autonomy_level: str = "semi-autonomous"


AGENT_REGISTRY: Dict[str, AgentConfig] = {
    "agent_001_policy": AgentConfig(
        id="agent_001_policy",
        name="Policy Monitor",
        description="Scores policy and regulatory changes and queues relevant ones for review",
        agent_class=PolicyMonitorAgent,
        required_settings=("GOOGLE_AI_API_KEY",),
    ),
    "agent_002_funding": AgentConfig(
        id="agent_002_funding",
        name="Funding & Grants",
        description="Screens incoming donations and routes large or suspicious ones to review",
        agent_class=FundingAgent,
        required_settings=("STRIPE_SECRET_KEY",),
    ),
    "agent_004_milestones": AgentConfig(
        id="agent_004_milestones",
        name="Milestone Tracker",
        description="Queues reported milestone progress for verification",
        agent_class=MilestoneTrackerAgent,
    ),
}


def get_all_agents() -> List[AgentConfig]:
    return list(AGENT_REGISTRY.values())


def get_agent_config(agent_id: str) -> Optional[AgentConfig]:
    return AGENT_REGISTRY.get(agent_id)


def validate_agent_environment(agent_id: str, config: Settings = default_settings) -> Tuple[bool, List[str]]:
    """(valid, missing setting names). Unknown agents are never valid."""
    agent_config = AGENT_REGISTRY.get(agent_id)
    if agent_config is None:
        return False, ["Agent not found in registry"]

    missing = [name for name in agent_config.required_settings if not getattr(config, name, None)]
    return not missing, missing


def is_agent_available(agent_id: str, config: Settings = default_settings) -> bool:
    agent_config = AGENT_REGISTRY.get(agent_id)
    if agent_config is None or not agent_config.enabled:
        return False
    valid, _ = validate_agent_environment(agent_id, config)
    return valid


def get_agent(
    agent_id: str,
    session_factory: Callable[[], Session],
    broadcaster: Optional[EventBroadcaster] = None,
    config: Settings = default_settings,
) -> Agent:
    """
    Instantiate an agent.

    Raises:
        NotFoundError: agent_id is not registered
        AgentUnavailableError: agent is disabled or missing required settings
    """
    agent_config = AGENT_REGISTRY.get(agent_id)
    if agent_config is None:
        raise NotFoundError(f"Unknown agent: {agent_id}")
    if not agent_config.enabled:
        raise AgentUnavailableError(f"Agent {agent_id} is disabled")

    valid, missing = validate_agent_environment(agent_id, config)
    if not valid:
        raise AgentUnavailableError(
            f"Agent {agent_id} missing required settings: {', '.join(missing)}",
            details={"missing": missing},
        )

    return agent_config.agent_class(session_factory, config, broadcaster)


__all__ = [
    "AgentConfig",
    "AGENT_REGISTRY",
    "get_all_agents",
    "get_agent_config",
    "validate_agent_environment",
    "is_agent_available",
    "get_agent",
]
