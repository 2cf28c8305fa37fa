from .agent_run import AgentRun, RunStatus, TriggerType
from .agent_event import AgentEvent, EventType, Severity
from .agent_failure import AgentFailure
from .approval import ApprovalItem, ApprovalStatus, ApprovalItemType, ApprovalPriority
from .circuit_breaker_state import CircuitBreakerState
from .policy_update import PolicyUpdate
from .donation import Donation, FraudCheckStatus
from .milestone_event import MilestoneEvent, MilestoneEventStatus

__all__ = [
    "AgentRun",
    "RunStatus",
    "TriggerType",
    "AgentEvent",
    "EventType",
    "Severity",
    "AgentFailure",
    "ApprovalItem",
    "ApprovalStatus",
    "ApprovalItemType",
    "ApprovalPriority",
    "CircuitBreakerState",
    "PolicyUpdate",
    "Donation",
    "FraudCheckStatus",
    "MilestoneEvent",
    "MilestoneEventStatus",
]
