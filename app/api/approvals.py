"""
Approval queue API.

GET lists items (pending by default) with per-status counts.
POST approves or rejects one item and applies the approved side effect.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.api.deps import get_broadcaster, get_notifier, http_error
from app.core.exceptions import AgentOpsError
from app.db import get_session
from app.models.approval import ApprovalPriority, ApprovalStatus
from app.schemas import ApprovalDecisionRequest, ApprovalItemOut
from app.services.approval_gate import decide, list_approvals
from app.services.event_stream import EventBroadcaster
from app.services.notifications import WhatsAppNotifier, format_dispatch_alert

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("")
def read_approvals(
    status: ApprovalStatus = Query(default=ApprovalStatus.PENDING),
    priority: Optional[ApprovalPriority] = Query(default=None),
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    session: Session = Depends(get_session),
):
    items, status_counts = list_approvals(session, status=status, priority=priority, agent_id=agent_id)
    return {
        "success": True,
        "approvals": [ApprovalItemOut.model_validate(item).to_json() for item in items],
        "count": len(items),
        "statusCounts": status_counts,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("")
def decide_approval(
    body: ApprovalDecisionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    notifier: WhatsAppNotifier = Depends(get_notifier),
):
    if body.approval_id is None or not body.action:
        raise HTTPException(status_code=400, detail="approvalId and action are required")

    try:
        result = decide(
            session,
            body.approval_id,
            body.action,
            notes=body.notes,
            broadcaster=broadcaster,
        )
    except AgentOpsError as e:
        raise http_error(e)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Approval update failed", approval_id=body.approval_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to update approval")

    if result.dispatch_error:
        background_tasks.add_task(
            notifier.send_alert,
            format_dispatch_alert(
                body.approval_id,
                result.item.item_type.value,
                result.item.item_id,
                result.dispatch_error,
            ),
        )

    return {
        "success": True,
        "action": result.action,
        "approvalId": body.approval_id,
        "message": result.message,
        "dispatched": result.dispatched,
    }
