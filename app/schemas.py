from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.agent_event import Severity
from app.models.agent_run import RunStatus, TriggerType
from app.models.approval import ApprovalItemType, ApprovalPriority, ApprovalStatus


class CamelModel(BaseModel):
    # JSON uses camelCase, Python uses snake_case; both are accepted on input
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# --- Requests ---

class TriggerRequest(CamelModel):
    agent_id: Optional[str] = None
    triggered_by: str = "dashboard"
    input_data: Optional[Dict[str, Any]] = None

class CircuitBreakerRequest(CamelModel):
    agent_id: Optional[str] = None
    action: Optional[str] = None

class ApprovalDecisionRequest(CamelModel):
    approval_id: Optional[int] = None
    action: Optional[str] = None
    notes: Optional[str] = None


# --- Responses ---

class AgentEventOut(CamelModel):
    id: int
    run_id: Optional[str] = None
    agent_id: str
    event_type: str
    message: str
    severity: Severity
    data: Optional[Dict[str, Any]] = None
    created_at: datetime

class AgentRunOut(CamelModel):
    id: str
    agent_id: str
    status: RunStatus
    triggered_by: str
    trigger_type: TriggerType
    started_at: datetime
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    execution_time_ms: Optional[int] = None
    items_processed: int = 0
    input_data: Optional[Any] = None
    output_data: Optional[Any] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

class AgentRunWithEvents(AgentRunOut):
    events: List[AgentEventOut] = []

class ApprovalItemOut(CamelModel):
    id: int
    agent_id: str
    run_id: Optional[str] = None
    item_type: ApprovalItemType
    item_id: str
    title: str
    status: ApprovalStatus
    priority: ApprovalPriority
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewer_notes: Optional[str] = None
