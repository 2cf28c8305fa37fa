"""
Rule-based agents.

Each agent turns rows in a domain table into approval requests (or, for small
donations, a direct decision). They honour the execute(AgentInput) ->
AgentOutput contract that the executor retries and guards with the circuit
breaker.

Datastore work is synchronous SQLModel; execute() hands it to a worker thread
so a long scan does not stall the event loop.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlmodel import Session, func, select

from app.core.config import Settings
from app.core.typing import col
from app.models.approval import ApprovalItemType, ApprovalPriority
from app.models.donation import Donation, FraudCheckStatus
from app.models.milestone_event import MilestoneEvent, MilestoneEventStatus
from app.models.policy_update import PolicyUpdate
from app.services.approval_gate import request_approval, reviewed_item_ids
from app.services.event_stream import EventBroadcaster

logger = structlog.get_logger(__name__)

POLICY_KEYWORDS = (
    "inga",
    "hydropower",
    "drc",
    "congo",
    "energy",
    "infrastructure",
    "ai",
    "sovereignty",
    "africa",
    "renewable",
)

# Matches needed for a relevance score of 1.0
POLICY_FULL_MATCH = 5

RAPID_REPEAT_WINDOW = timedelta(hours=24)
RAPID_REPEAT_COUNT = 3


@dataclass
class AgentInput:
    trigger: str
    data: Optional[Any] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentOutput:
    success: bool
    data: Optional[Any] = None
    confidence: Optional[float] = None
    requires_review: bool = False
    reasoning: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    items_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "confidence": self.confidence,
            "requiresReview": self.requires_review,
            "reasoning": self.reasoning,
            "errors": self.errors,
        }


class Agent(ABC):
    agent_id: str = ""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.broadcaster = broadcaster

    async def execute(self, agent_input: AgentInput) -> AgentOutput:
        return await asyncio.to_thread(self.run, agent_input)

    @abstractmethod
    def run(self, agent_input: AgentInput) -> AgentOutput:
        """Synchronous body of execute(), run in a worker thread."""


def score_policy_relevance(title: str, summary: str) -> Dict[str, Any]:
    """
    Keyword relevance in [0, 1].

    Keywords are matched as whole words so "ai" does not hit "said".
    """
    text = f"{title} {summary}".lower()
    words = set(re.findall(r"[a-z0-9]+", text))
    matched = [keyword for keyword in POLICY_KEYWORDS if keyword in words]
    score = round(min(len(matched) / POLICY_FULL_MATCH, 1.0), 2)
    return {"score": score, "matches": len(matched), "keywords": matched}


class PolicyMonitorAgent(Agent):
    """
    Stores relevant policy items and queues them for human review.

    Input data: {"policies": [{"title", "summary", "sourceUrl"?}, ...]}
    """

    agent_id = "agent_001_policy"

    def run(self, agent_input: AgentInput) -> AgentOutput:
        data = agent_input.data or {}
        candidates = data.get("policies") or []
        run_id = agent_input.context.get("run_id")
        threshold = self.settings.POLICY_RELEVANCE_THRESHOLD

        stored: List[Dict[str, Any]] = []
        skipped = 0

        with self.session_factory() as session:
            for candidate in candidates:
                title = (candidate.get("title") or "").strip()
                if not title:
                    skipped += 1
                    continue
                summary = candidate.get("summary") or ""
                relevance = score_policy_relevance(title, summary)
                if relevance["score"] < threshold:
                    skipped += 1
                    continue

                policy = PolicyUpdate(
                    title=title,
                    summary=summary,
                    source_url=candidate.get("sourceUrl") or candidate.get("source_url"),
                    relevance_score=relevance["score"],
                )
                session.add(policy)
                session.commit()
                session.refresh(policy)

                priority = ApprovalPriority.HIGH if relevance["score"] >= 0.8 else ApprovalPriority.NORMAL
                request_approval(
                    session,
                    agent_id=self.agent_id,
                    item_type=ApprovalItemType.POLICY_UPDATE,
                    item_id=str(policy.id),
                    title=f"Policy update: {title}",
                    priority=priority,
                    payload={"relevance": relevance["score"], "keywords": relevance["keywords"]},
                    run_id=run_id,
                    broadcaster=self.broadcaster,
                )
                stored.append({"policyId": policy.id, "relevance": relevance["score"]})

        logger.info("Policy scan complete", stored=len(stored), skipped=skipped)
        return AgentOutput(
            success=True,
            data={"stored": stored, "skipped": skipped},
            confidence=max((item["relevance"] for item in stored), default=None),
            requires_review=bool(stored),
            reasoning=f"{len(stored)} of {len(candidates)} policy items at or above relevance {threshold}",
            items_processed=len(candidates),
        )


class FundingAgent(Agent):
    """
    Screens pending donations.

    At or below AUTO_APPROVE_THRESHOLD_USD: approved directly.
    At or above FRAUD_THRESHOLD_USD: flagged, queued as a high priority grant review.
    Otherwise: queued at normal priority (high when the donor made
    RAPID_REPEAT_COUNT or more donations in the last 24 hours).
    """

    agent_id = "agent_002_funding"

    def _recent_donations(self, session: Session, donation: Donation) -> int:
        if not donation.donor_email:
            return 0
        since = datetime.now(timezone.utc) - RAPID_REPEAT_WINDOW
        stmt = select(func.count()).select_from(Donation).where(
            col(Donation.donor_email) == donation.donor_email,
            col(Donation.created_at) >= since,
        )
        return session.exec(stmt).one()

    def run(self, agent_input: AgentInput) -> AgentOutput:
        run_id = agent_input.context.get("run_id")
        auto_approve = self.settings.AUTO_APPROVE_THRESHOLD_USD
        fraud_threshold = self.settings.FRAUD_THRESHOLD_USD

        approved = flagged = queued = skipped = 0

        with self.session_factory() as session:
            pending = session.exec(
                select(Donation)
                .where(col(Donation.fraud_check_status) == FraudCheckStatus.PENDING)
                .order_by(col(Donation.created_at).asc())
            ).all()
            reviewed = reviewed_item_ids(session, ApprovalItemType.GRANT)

            for donation in pending:
                # A rejected grant stays pending; the decision is final
                if str(donation.id) in reviewed:
                    skipped += 1
                    continue
                if donation.amount_usd <= auto_approve:
                    donation.fraud_check_status = FraudCheckStatus.APPROVED
                    session.add(donation)
                    session.commit()
                    approved += 1
                    continue

                indicators: List[str] = []
                priority = ApprovalPriority.NORMAL
                if donation.amount_usd >= fraud_threshold:
                    indicators.append("high_amount")
                    priority = ApprovalPriority.HIGH
                    donation.fraud_check_status = FraudCheckStatus.FLAGGED
                    session.add(donation)
                    session.commit()
                    flagged += 1
                else:
                    queued += 1

                if self._recent_donations(session, donation) >= RAPID_REPEAT_COUNT:
                    indicators.append("rapid_repeats")
                    priority = ApprovalPriority.HIGH

                request_approval(
                    session,
                    agent_id=self.agent_id,
                    item_type=ApprovalItemType.GRANT,
                    item_id=str(donation.id),
                    title=f"Donation of ${donation.amount_usd:,.2f} needs review",
                    priority=priority,
                    payload={
                        "amountUsd": donation.amount_usd,
                        "currency": donation.currency,
                        "indicators": indicators,
                    },
                    run_id=run_id,
                    broadcaster=self.broadcaster,
                )

        total = approved + flagged + queued
        logger.info(
            "Donation screening complete", approved=approved, flagged=flagged, queued=queued, skipped=skipped
        )
        return AgentOutput(
            success=True,
            data={"approved": approved, "flagged": flagged, "queued": queued},
            confidence=1.0 if flagged == 0 else 0.5,
            requires_review=(flagged + queued) > 0,
            reasoning=f"{approved} auto-approved, {flagged} flagged, {queued} queued for review",
            items_processed=total,
        )


class MilestoneTrackerAgent(Agent):
    """Queues every reported milestone event for verification."""

    agent_id = "agent_004_milestones"

    def run(self, agent_input: AgentInput) -> AgentOutput:
        run_id = agent_input.context.get("run_id")
        queued = 0

        with self.session_factory() as session:
            reported = session.exec(
                select(MilestoneEvent).where(col(MilestoneEvent.status) == MilestoneEventStatus.REPORTED)
            ).all()
            reviewed = reviewed_item_ids(session, ApprovalItemType.MILESTONE)

            for milestone_event in reported:
                if str(milestone_event.id) in reviewed:
                    continue
                request_approval(
                    session,
                    agent_id=self.agent_id,
                    item_type=ApprovalItemType.MILESTONE,
                    item_id=str(milestone_event.id),
                    title=f"Verify milestone: {milestone_event.title}",
                    priority=ApprovalPriority.NORMAL,
                    payload={
                        "milestoneId": milestone_event.milestone_id,
                        "progress": milestone_event.progress,
                    },
                    run_id=run_id,
                    broadcaster=self.broadcaster,
                )
                queued += 1

        return AgentOutput(
            success=True,
            data={"queued": queued},
            confidence=1.0,
            requires_review=queued > 0,
            reasoning=f"{queued} milestone event(s) awaiting verification",
            items_processed=queued,
        )


__all__ = [
    "Agent",
    "AgentInput",
    "AgentOutput",
    "PolicyMonitorAgent",
    "FundingAgent",
    "MilestoneTrackerAgent",
    "score_policy_relevance",
    "POLICY_KEYWORDS",
]
