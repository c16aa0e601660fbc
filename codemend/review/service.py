from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from codemend.config.review import ReviewConfig
from codemend.core.errors import CodemendError, InvalidTransition, IssueNotFound, ValidationError
from codemend.core.events import ISSUE_TRANSITIONED, EventBus
from codemend.knowledge.store import KnowledgeStore
from codemend.models.issue import REVIEWER_ACTIONS, Issue, ReviewAction, ReviewDecision, ReviewStatus
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.review.policies import POLICY_ACTOR, AutoApprovalPolicy
from codemend.review.state_machine import transition
from codemend.storage.interfaces import IssueStore

logger = structlog.get_logger(__name__)


class BatchResult(BaseModel):
    policy: str
    processed: int = 0
    approved: List[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    failed: Dict[str, str] = Field(default_factory=dict)
    patterns_learned: List[str] = Field(default_factory=list)


class ReviewService:
    """Drives issues through the review state machine.

    Every transition is a compare-and-set on the stored status, so of two
    concurrent actions on one issue only the first valid one is applied; the
    other gets ``InvalidTransition``.
    """

    def __init__(
        self,
        store: IssueStore,
        events: Optional[EventBus] = None,
        knowledge: Optional[KnowledgeStore] = None,
        config: Optional[ReviewConfig] = None,
    ):
        self.store = store
        self.events = events
        self.knowledge = knowledge
        self.config = config or ReviewConfig.default()

    async def _require(self, issue_id: str) -> Issue:
        issue = await self.store.get_issue(issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        return issue

    async def transition(
        self, issue_id: str, action: ReviewAction, notes: str = "", actor: str = "system"
    ) -> ReviewDecision:
        issue = await self._require(issue_id)
        target, decision = transition(issue_id, issue.status, action, notes=notes, actor=actor)
        if not await self.store.compare_and_set_status(issue_id, issue.status, target, decision):
            # Someone else moved the issue between our read and our write.
            current = await self._require(issue_id)
            raise InvalidTransition(current.status.value, action.value, issue_id)

        logger.info(
            "issue_transitioned",
            issue_id=issue_id,
            action=action.value,
            from_status=decision.from_status.value,
            to_status=decision.to_status.value,
            actor=actor,
        )
        if self.events is not None:
            await self.events.emit(
                ISSUE_TRANSITIONED,
                {
                    "issue_id": issue_id,
                    "action": action.value,
                    "from_status": decision.from_status.value,
                    "to_status": decision.to_status.value,
                    "actor": actor,
                    "notes": notes,
                    "fix_id": issue.fix.id if issue.fix else None,
                    "knowledge_entry_id": issue.fix.knowledge_entry_id if issue.fix else None,
                },
                source="review",
            )
        return decision

    async def review(self, issue_id: str, action: str, notes: str = "", actor: str = "reviewer") -> ReviewDecision:
        """Applies a reviewer's approve/reject/defer action."""
        try:
            parsed = ReviewAction(action)
        except ValueError:
            raise ValidationError(f"Unknown review action '{action}'") from None
        if parsed not in REVIEWER_ACTIONS:
            raise ValidationError(
                f"Action '{action}' is not a review action; expected one of "
                f"{', '.join(a.value for a in REVIEWER_ACTIONS)}"
            )
        return await self.transition(issue_id, parsed, notes=notes, actor=actor)

    async def submit(self, issue_id: str, actor: str = "crawler") -> ReviewDecision:
        return await self.transition(issue_id, ReviewAction.SUBMIT, actor=actor)

    async def reopen(self, issue_id: str, notes: str = "", actor: str = "reviewer", resubmit: bool = True) -> ReviewDecision:
        """Reopens a rejected or deferred issue; by default it goes straight back into the review queue."""
        decision = await self.transition(issue_id, ReviewAction.REOPEN, notes=notes, actor=actor)
        if not resubmit:
            return decision
        return await self.transition(issue_id, ReviewAction.SUBMIT, actor=actor)

    async def review_queue(self, limit: int = 100, offset: int = 0) -> List[Issue]:
        return await self.store.list_issues(status=ReviewStatus.PENDING_REVIEW, limit=limit, offset=offset)

    async def history(self, issue_id: str) -> List[ReviewDecision]:
        await self._require(issue_id)
        return await self.store.decisions(issue_id)

    async def auto_approve(self, issue: Issue, policy: AutoApprovalPolicy) -> Tuple[Optional[ReviewDecision], str]:
        """Approves ``issue`` if ``policy`` allows it; returns (decision or None, reason)."""
        approve, reason = policy.evaluate(issue)
        if not approve:
            return None, reason
        decision = await self.transition(
            issue.id, ReviewAction.APPROVE, notes=f"{policy.name}: {reason}", actor=POLICY_ACTOR
        )
        return decision, reason

    async def process_batch(
        self,
        policy: AutoApprovalPolicy,
        issue_ids: Optional[Sequence[str]] = None,
        limit: int = 100,
    ) -> BatchResult:
        """Runs ``policy`` over pending issues (or ``issue_ids``).

        Each issue succeeds or fails on its own. Three or more auto-approvals
        sharing (type, severity) are summarized into a pattern entry.
        """
        result = BatchResult(policy=policy.name)
        if issue_ids is None:
            candidates = await self.review_queue(limit=limit)
        else:
            candidates = []
            for issue_id in issue_ids:
                try:
                    issue = await self.store.get_issue(issue_id)
                except Exception as e:
                    logger.warning("batch_lookup_failed", issue_id=issue_id, error=str(e))
                    result.failed[issue_id] = str(e)
                    continue
                if issue is None:
                    result.failed[issue_id] = "not found"
                else:
                    candidates.append(issue)

        approved: List[Issue] = []
        for issue in candidates:
            result.processed += 1
            try:
                decision, reason = await self.auto_approve(issue, policy)
            except Exception as e:
                # one store or transition failure never sinks the rest of the batch
                logger.warning("batch_item_failed", issue_id=issue.id, error=str(e))
                result.failed[issue.id] = str(e)
                continue
            if decision is None:
                result.skipped[issue.id] = reason
                continue
            result.approved.append(issue.id)
            approved.append(issue)

        result.patterns_learned = await self._learn_batch_patterns(approved, policy)
        logger.info(
            "batch_review_completed",
            policy=policy.name,
            processed=result.processed,
            approved=len(result.approved),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _learn_batch_patterns(self, approved: List[Issue], policy: AutoApprovalPolicy) -> List[str]:
        if self.knowledge is None:
            return []
        groups: Dict[Tuple[str, str], List[Issue]] = defaultdict(list)
        for issue in approved:
            groups[(issue.type.value, issue.severity.value)].append(issue)

        learned = []
        for (issue_type, severity), issues in groups.items():
            if len(issues) < self.config.batch_pattern_threshold:
                continue
            rule_ids = sorted({i.rule_id for i in issues})
            confidences = [i.fix.effective_confidence for i in issues if i.fix is not None]
            entry = KnowledgeEntry(
                type=KnowledgeType.PATTERN,
                content=(
                    f"Recurring {issue_type} issues of {severity} severity are routinely auto-approved "
                    f"({len(issues)} in one batch); rules: {', '.join(rule_ids)}."
                ),
                source="batch-review",
                confidence=sum(confidences) / len(confidences) if confidences else 0.5,
                tags=[issue_type, severity, "batch-pattern"] + rule_ids,
                metadata={
                    "issue_ids": [i.id for i in issues],
                    "rule_ids": rule_ids,
                    "policy": policy.name,
                    "count": len(issues),
                },
            )
            try:
                added = await self.knowledge.add_knowledge(entry)
            except CodemendError as e:
                logger.warning("batch_pattern_not_stored", type=issue_type, severity=severity, error=str(e))
                continue
            learned.append(added.entry.id)
        return learned
