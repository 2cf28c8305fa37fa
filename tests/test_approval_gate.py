"""
Tests for the approval queue.

Tests cover:
1. request_approval deduplication and priority escalation
2. list_approvals filters and status counts
3. decide validation, exactly-once transition and side effects
4. Dispatch failures recorded without reverting the decision
"""

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from app.core.exceptions import (
    AlreadyReviewedError,
    InvalidActionError,
    NotFoundError,
    ValidationError,
)
from app.models.agent_event import AgentEvent, EventType
from app.models.approval import ApprovalItem, ApprovalItemType, ApprovalPriority, ApprovalStatus
from app.models.donation import Donation, FraudCheckStatus
from app.models.milestone_event import MilestoneEvent, MilestoneEventStatus
from app.models.policy_update import PolicyUpdate
from app.services import approval_gate
from app.services.approval_gate import decide, list_approvals, request_approval, reviewed_item_ids


def _events(session, event_type: EventType):
    return session.exec(select(AgentEvent).where(AgentEvent.event_type == event_type.value)).all()


class TestRequestApproval:
    """Tests for queueing approvals."""

    def test_creates_pending_item_and_event(self, test_session):
        """A new request is pending and logged as approval_requested."""
        item = request_approval(
            test_session,
            agent_id="agent_004_milestones",
            item_type=ApprovalItemType.MILESTONE,
            item_id="7",
            title="Verify milestone: survey",
            run_id="run-1",
        )

        assert item.id is not None
        assert item.status == ApprovalStatus.PENDING
        assert item.priority == ApprovalPriority.NORMAL
        events = _events(test_session, EventType.APPROVAL_REQUESTED)
        assert len(events) == 1
        assert events[0].run_id == "run-1"
        assert events[0].data["approval_id"] == item.id

    def test_pending_duplicate_returns_existing(self, test_session):
        """Requesting the same domain row twice keeps one pending item."""
        first = request_approval(test_session, "agent_004_milestones", ApprovalItemType.MILESTONE, "7", "A")
        second = request_approval(test_session, "agent_004_milestones", ApprovalItemType.MILESTONE, "7", "B")

        assert second.id == first.id
        assert len(test_session.exec(select(ApprovalItem)).all()) == 1
        assert len(_events(test_session, EventType.APPROVAL_REQUESTED)) == 1

    def test_duplicate_raises_priority(self, test_session):
        """A more urgent duplicate escalates the existing item."""
        request_approval(test_session, "agent_002_funding", ApprovalItemType.GRANT, "3", "A")
        item = request_approval(
            test_session, "agent_002_funding", ApprovalItemType.GRANT, "3", "A", priority=ApprovalPriority.HIGH
        )
        assert item.priority == ApprovalPriority.HIGH

    def test_duplicate_never_lowers_priority(self, test_session):
        """A less urgent duplicate leaves the priority alone."""
        request_approval(
            test_session, "agent_002_funding", ApprovalItemType.GRANT, "3", "A", priority=ApprovalPriority.URGENT
        )
        item = request_approval(
            test_session, "agent_002_funding", ApprovalItemType.GRANT, "3", "A", priority=ApprovalPriority.LOW
        )
        assert item.priority == ApprovalPriority.URGENT

    def test_decided_item_does_not_block_new_request(self, test_session, factory):
        """Only pending items deduplicate."""
        factory.create_approval(item_type=ApprovalItemType.MILESTONE, item_id="7", status=ApprovalStatus.APPROVED)
        request_approval(test_session, "agent_004_milestones", ApprovalItemType.MILESTONE, "7", "again")

        assert len(test_session.exec(select(ApprovalItem)).all()) == 2


class TestListApprovals:
    """Tests for listing and counting."""

    def test_filters_and_counts(self, test_session, factory):
        """Counts cover the whole queue regardless of filters."""
        factory.create_approval(item_id="1", priority=ApprovalPriority.HIGH)
        factory.create_approval(item_id="2", agent_id="agent_002_funding", item_type=ApprovalItemType.GRANT)
        factory.create_approval(item_id="3", status=ApprovalStatus.APPROVED)
        factory.create_approval(item_id="4", status=ApprovalStatus.REJECTED)

        items, counts = list_approvals(test_session, status=ApprovalStatus.PENDING)

        assert {i.item_id for i in items} == {"1", "2"}
        assert counts == {"pending": 2, "approved": 1, "rejected": 1}

        high, _ = list_approvals(test_session, status=ApprovalStatus.PENDING, priority=ApprovalPriority.HIGH)
        assert [i.item_id for i in high] == ["1"]

        funding, _ = list_approvals(test_session, agent_id="agent_002_funding")
        assert [i.item_id for i in funding] == ["2"]

    def test_newest_first(self, test_session, factory):
        """Items are ordered by creation time, newest first."""
        for item_id in ("1", "2", "3"):
            factory.create_approval(item_id=item_id)

        items, _ = list_approvals(test_session)
        assert [i.item_id for i in items] == ["3", "2", "1"]

    def test_empty_queue(self, test_session):
        """Counts are zero-filled."""
        items, counts = list_approvals(test_session)
        assert items == []
        assert counts == {"pending": 0, "approved": 0, "rejected": 0}


class TestDecideValidation:
    """Input validation happens before any write."""

    def test_invalid_action(self, test_session, factory):
        """Only approve and reject are accepted."""
        item = factory.create_approval()
        with pytest.raises(InvalidActionError):
            decide(test_session, item.id, "escalate")

    def test_reject_requires_notes(self, test_session, factory):
        """Rejecting without (non-blank) notes is refused and nothing changes."""
        item = factory.create_approval()
        with pytest.raises(ValidationError):
            decide(test_session, item.id, "reject", notes="   ")

        test_session.refresh(item)
        assert item.status == ApprovalStatus.PENDING

    def test_unknown_id(self, test_session):
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            decide(test_session, 999, "approve")


class TestDecide:
    """Tests for the exactly-once decision and side effects."""

    def test_approve_milestone_verifies_event(self, test_session, factory):
        """Approving a milestone item marks the milestone event verified."""
        milestone_event = factory.create_milestone_event()
        item = factory.create_approval(item_type=ApprovalItemType.MILESTONE, item_id=str(milestone_event.id))

        result = decide(test_session, item.id, "approve", notes="looks right")

        assert result.dispatched is True
        assert result.dispatch_error is None
        assert result.message == "Item approved successfully"
        assert result.item.status == ApprovalStatus.APPROVED
        assert result.item.reviewed_by == "admin"
        assert result.item.reviewed_at is not None
        assert result.item.reviewer_notes == "looks right"
        test_session.expire_all()
        assert test_session.get(MilestoneEvent, milestone_event.id).status == MilestoneEventStatus.VERIFIED
        assert len(_events(test_session, EventType.APPROVAL_GRANTED)) == 1

    def test_approve_grant_approves_donation(self, test_session, factory):
        """Approving a grant clears the donation's fraud check."""
        donation = factory.create_donation(25000, status=FraudCheckStatus.FLAGGED)
        item = factory.create_approval(
            item_type=ApprovalItemType.GRANT, item_id=str(donation.id), agent_id="agent_002_funding"
        )

        decide(test_session, item.id, "approve")

        test_session.expire_all()
        assert test_session.get(Donation, donation.id).fraud_check_status == FraudCheckStatus.APPROVED

    def test_approve_policy_marks_reviewed(self, test_session, factory):
        """Approving a policy update marks it reviewed."""
        policy = factory.create_policy_update()
        item = factory.create_approval(
            item_type=ApprovalItemType.POLICY_UPDATE, item_id=str(policy.id), agent_id="agent_001_policy"
        )

        decide(test_session, item.id, "approve")

        test_session.expire_all()
        stored = test_session.get(PolicyUpdate, policy.id)
        assert stored.reviewed is True
        assert stored.reviewed_at is not None

    def test_reject_applies_no_side_effect(self, test_session, factory):
        """Rejected items leave the domain row untouched."""
        milestone_event = factory.create_milestone_event()
        item = factory.create_approval(item_id=str(milestone_event.id))

        result = decide(test_session, item.id, "reject", notes="duplicate report")

        assert result.dispatched is False
        assert result.item.status == ApprovalStatus.REJECTED
        assert result.message == "Item rejected successfully"
        test_session.expire_all()
        assert test_session.get(MilestoneEvent, milestone_event.id).status == MilestoneEventStatus.REPORTED
        assert len(_events(test_session, EventType.APPROVAL_REJECTED)) == 1

    def test_second_decision_is_refused(self, test_session, factory):
        """An item is decided exactly once; the second reviewer loses."""
        milestone_event = factory.create_milestone_event()
        item = factory.create_approval(item_id=str(milestone_event.id))
        decide(test_session, item.id, "approve")

        with pytest.raises(AlreadyReviewedError):
            decide(test_session, item.id, "reject", notes="too late")

        test_session.expire_all()
        assert test_session.get(ApprovalItem, item.id).status == ApprovalStatus.APPROVED

    def test_custom_reviewer(self, test_session, factory):
        """The reviewer name is stamped on the item."""
        milestone_event = factory.create_milestone_event()
        item = factory.create_approval(item_id=str(milestone_event.id))

        result = decide(test_session, item.id, "approve", reviewer="ops@ubuntu")
        assert result.item.reviewed_by == "ops@ubuntu"


class TestDispatchFailure:
    """Side-effect failures after the decision is committed."""

    def test_missing_target_keeps_decision(self, test_session, factory):
        """The item stays approved; a critical dispatch-failed event is written."""
        item = factory.create_approval(item_type=ApprovalItemType.MILESTONE, item_id="404")

        result = decide(test_session, item.id, "approve")

        assert result.dispatched is False
        assert "not found" in result.dispatch_error
        test_session.expire_all()
        assert test_session.get(ApprovalItem, item.id).status == ApprovalStatus.APPROVED

        failed = _events(test_session, EventType.APPROVAL_DISPATCH_FAILED)
        assert len(failed) == 1
        assert failed[0].severity.value == "critical"
        assert failed[0].data["item_id"] == "404"


class TestDecisionAuditFailure:
    """The decision event is best effort once the decision is committed."""

    def test_audit_write_failure_keeps_decision(self, test_session, factory, monkeypatch):
        """A failing approval_granted write neither raises nor blocks dispatch."""
        milestone_event = factory.create_milestone_event()
        item = factory.create_approval(item_id=str(milestone_event.id))
        real_record_event = approval_gate.record_event

        def flaky_record_event(session, agent_id, event_type, *args, **kwargs):
            if event_type == EventType.APPROVAL_GRANTED:
                raise OperationalError("INSERT INTO agent_events", {}, Exception("disk I/O error"))
            return real_record_event(session, agent_id, event_type, *args, **kwargs)

        monkeypatch.setattr(approval_gate, "record_event", flaky_record_event)

        result = decide(test_session, item.id, "approve")

        assert result.dispatched is True
        test_session.expire_all()
        assert test_session.get(ApprovalItem, item.id).status == ApprovalStatus.APPROVED
        assert test_session.get(MilestoneEvent, milestone_event.id).status == MilestoneEventStatus.VERIFIED
        assert _events(test_session, EventType.APPROVAL_GRANTED) == []


class TestReviewedItemIds:
    """Decided items per item type."""

    def test_only_decided_items(self, test_session, factory):
        factory.create_approval(item_type=ApprovalItemType.GRANT, item_id="1", status=ApprovalStatus.REJECTED)
        factory.create_approval(item_type=ApprovalItemType.GRANT, item_id="2", status=ApprovalStatus.APPROVED)
        factory.create_approval(item_type=ApprovalItemType.GRANT, item_id="3")
        factory.create_approval(item_type=ApprovalItemType.MILESTONE, item_id="4", status=ApprovalStatus.REJECTED)

        assert reviewed_item_ids(test_session, ApprovalItemType.GRANT) == {"1", "2"}
