"""
Approval Gate

Human-in-the-loop queue for actions agents are not allowed to apply on their
own. Agents request approvals; reviewers approve or reject them; an approval
applies exactly one side effect to the domain row it names.

Usage:
    from app.services.approval_gate import request_approval, list_approvals, decide

    item = request_approval(
        session,
        agent_id="agent_004_milestones",
        item_type=ApprovalItemType.MILESTONE,
        item_id="7",
        title="Verify milestone: Phase 1 survey",
    )

    items, counts = list_approvals(session, status=ApprovalStatus.PENDING)

    result = decide(session, item.id, "approve")
    if not result.dispatched:
        # Decision stands; the side effect needs manual follow-up
        ...

Decision rules:
    - action must be "approve" or "reject" (InvalidActionError)
    - rejecting requires notes (ValidationError)
    - unknown id -> NotFoundError, nothing changes
    - the pending -> decided transition is a conditional update; losing a
      race to another reviewer raises AlreadyReviewedError
    - side effects are best effort: a failure is captured and recorded as an
      approval_dispatch_failed event, the decision is not reverted
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import update
from sqlmodel import Session, func, select

from app.core.errors import ErrorHandler
from app.core.exceptions import (
    AlreadyReviewedError,
    InvalidActionError,
    NotFoundError,
    ValidationError,
)
from app.core.typing import col
from app.models.agent_event import EventType, Severity
from app.models.approval import (
    PRIORITY_RANK,
    ApprovalItem,
    ApprovalItemType,
    ApprovalPriority,
    ApprovalStatus,
)
from app.models.donation import Donation, FraudCheckStatus
from app.models.milestone_event import MilestoneEvent, MilestoneEventStatus
from app.models.policy_update import PolicyUpdate
from app.services.event_stream import EventBroadcaster
from app.services.run_store import record_event

logger = structlog.get_logger(__name__)

VALID_ACTIONS = ("approve", "reject")


@dataclass
class DecisionResult:
    item: ApprovalItem
    action: str
    dispatched: bool = False
    dispatch_error: Optional[str] = None

    @property
    def message(self) -> str:
        verb = "approved" if self.action == "approve" else "rejected"
        return f"Item {verb} successfully"


def request_approval(
    session: Session,
    agent_id: str,
    item_type: ApprovalItemType,
    item_id: str,
    title: str,
    priority: ApprovalPriority = ApprovalPriority.NORMAL,
    payload: Optional[Dict[str, Any]] = None,
    run_id: Optional[str] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> ApprovalItem:
    """
    Queue an item for review.

    If the same domain row already has a pending item, that item is returned
    (with its priority raised if the new request is more urgent).
    """
    existing = session.exec(
        select(ApprovalItem).where(
            col(ApprovalItem.item_type) == item_type,
            col(ApprovalItem.item_id) == item_id,
            col(ApprovalItem.status) == ApprovalStatus.PENDING,
        )
    ).first()

    if existing:
        if PRIORITY_RANK[priority] > PRIORITY_RANK[existing.priority]:
            existing.priority = priority
            session.add(existing)
            session.commit()
            session.refresh(existing)
        logger.debug("Approval already pending", approval_id=existing.id, item_type=item_type.value, item_id=item_id)
        return existing

    item = ApprovalItem(
        agent_id=agent_id,
        run_id=run_id,
        item_type=item_type,
        item_id=item_id,
        title=title,
        priority=priority,
        payload=payload,
    )
    session.add(item)
    session.commit()
    session.refresh(item)

    record_event(
        session,
        agent_id,
        EventType.APPROVAL_REQUESTED,
        f"{item_type.value} {item_id} queued for approval",
        run_id=run_id,
        data={"approval_id": item.id, "item_type": item_type.value, "item_id": item_id, "priority": priority.value},
        broadcaster=broadcaster,
    )
    logger.info("Approval requested", approval_id=item.id, agent_id=agent_id, item_type=item_type.value)
    return item


def reviewed_item_ids(session: Session, item_type: ApprovalItemType) -> Set[str]:
    """Item ids of this type that already have an approved or rejected decision."""
    rows = session.exec(
        select(ApprovalItem.item_id).where(
            col(ApprovalItem.item_type) == item_type,
            col(ApprovalItem.status) != ApprovalStatus.PENDING,
        )
    ).all()
    return set(rows)


def list_approvals(
    session: Session,
    status: Optional[ApprovalStatus] = None,
    priority: Optional[ApprovalPriority] = None,
    agent_id: Optional[str] = None,
) -> Tuple[List[ApprovalItem], Dict[str, int]]:
    """Filtered items (newest first) and per-status counts over the whole queue."""
    stmt = select(ApprovalItem)
    if status:
        stmt = stmt.where(col(ApprovalItem.status) == status)
    if priority:
        stmt = stmt.where(col(ApprovalItem.priority) == priority)
    if agent_id:
        stmt = stmt.where(col(ApprovalItem.agent_id) == agent_id)
    stmt = stmt.order_by(col(ApprovalItem.created_at).desc(), col(ApprovalItem.id).desc())
    items = list(session.exec(stmt).all())

    status_counts = {s.value: 0 for s in ApprovalStatus}
    rows = session.exec(
        select(ApprovalItem.status, func.count()).group_by(ApprovalItem.status)
    ).all()
    for row_status, count in rows:
        status_counts[ApprovalStatus(row_status).value] = count

    return items, status_counts


# --- Side effects applied on approval ---

def _approve_policy_update(session: Session, item: ApprovalItem) -> None:
    policy = session.get(PolicyUpdate, int(item.item_id))
    if policy is None:
        raise NotFoundError(f"Policy update {item.item_id} not found")
    policy.reviewed = True
    policy.reviewed_at = datetime.now(timezone.utc)
    session.add(policy)


def _approve_grant(session: Session, item: ApprovalItem) -> None:
    donation = session.get(Donation, int(item.item_id))
    if donation is None:
        raise NotFoundError(f"Donation {item.item_id} not found")
    donation.fraud_check_status = FraudCheckStatus.APPROVED
    session.add(donation)


def _approve_milestone(session: Session, item: ApprovalItem) -> None:
    milestone_event = session.get(MilestoneEvent, int(item.item_id))
    if milestone_event is None:
        raise NotFoundError(f"Milestone event {item.item_id} not found")
    milestone_event.status = MilestoneEventStatus.VERIFIED
    session.add(milestone_event)


DISPATCH: Dict[ApprovalItemType, Callable[[Session, ApprovalItem], None]] = {
    ApprovalItemType.POLICY_UPDATE: _approve_policy_update,
    ApprovalItemType.GRANT: _approve_grant,
    ApprovalItemType.MILESTONE: _approve_milestone,
}


def dispatch_approved(session: Session, item: ApprovalItem) -> None:
    """Apply the side effect for an approved item. Raises on failure."""
    handler = DISPATCH.get(item.item_type)
    if handler is None:
        raise ValidationError(f"No dispatch for item type {item.item_type}")
    try:
        handler(session, item)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("Approved action applied", approval_id=item.id, item_type=item.item_type.value, item_id=item.item_id)


def decide(
    session: Session,
    approval_id: int,
    action: str,
    notes: Optional[str] = None,
    reviewer: str = "admin",
    broadcaster: Optional[EventBroadcaster] = None,
) -> DecisionResult:
    if action not in VALID_ACTIONS:
        raise InvalidActionError('action must be "approve" or "reject"')

    notes = notes.strip() if notes else None
    if action == "reject" and not notes:
        raise ValidationError("Notes are required when rejecting an item")

    item = session.get(ApprovalItem, approval_id)
    if item is None:
        raise NotFoundError("Approval not found")

    new_status = ApprovalStatus.APPROVED if action == "approve" else ApprovalStatus.REJECTED
    result = session.execute(
        update(ApprovalItem)
        .where(col(ApprovalItem.id) == approval_id, col(ApprovalItem.status) == ApprovalStatus.PENDING)
        .values(
            status=new_status,
            reviewed_at=datetime.now(timezone.utc),
            reviewed_by=reviewer,
            reviewer_notes=notes,
        )
    )
    session.commit()
    if result.rowcount == 0:
        raise AlreadyReviewedError(
            f"Approval {approval_id} was already reviewed",
            details={"approval_id": approval_id},
        )
    session.refresh(item)

    verb = "approved" if action == "approve" else "rejected"
    # The decision is committed; a failed audit write must not turn it into an error
    with ErrorHandler("approval_decision_event", context={"approval_id": approval_id}) as audit:
        record_event(
            session,
            item.agent_id,
            EventType.APPROVAL_GRANTED if action == "approve" else EventType.APPROVAL_REJECTED,
            f"{item.item_type.value} {verb} by {reviewer}",
            run_id=item.run_id,
            data={
                "approval_id": approval_id,
                "item_type": item.item_type.value,
                "item_id": item.item_id,
                "notes": notes,
            },
            broadcaster=broadcaster,
        )
    if audit.error is not None:
        session.rollback()
    logger.info("Approval decided", approval_id=approval_id, action=action, reviewer=reviewer)

    decision = DecisionResult(item=item, action=action)
    if action != "approve":
        return decision

    with ErrorHandler(
        "approval_dispatch",
        context={"approval_id": approval_id, "item_type": item.item_type.value, "item_id": item.item_id},
    ) as handler:
        dispatch_approved(session, item)

    if handler.error is None:
        decision.dispatched = True
        return decision

    decision.dispatch_error = str(handler.error)
    # Decision stands; record the drift for manual follow-up
    with ErrorHandler("approval_dispatch_event", context={"approval_id": approval_id}):
        record_event(
            session,
            item.agent_id,
            EventType.APPROVAL_DISPATCH_FAILED,
            f"Approved {item.item_type.value} {item.item_id} could not be applied: {handler.error}",
            run_id=item.run_id,
            severity=Severity.CRITICAL,
            data={
                "approval_id": approval_id,
                "item_type": item.item_type.value,
                "item_id": item.item_id,
                "error": str(handler.error),
            },
            broadcaster=broadcaster,
        )
    return decision


__all__ = [
    "DecisionResult",
    "request_approval",
    "list_approvals",
    "reviewed_item_ids",
    "decide",
    "dispatch_approved",
    "DISPATCH",
    "VALID_ACTIONS",
]
