import asyncio

import pytest

from codemend.core.errors import InvalidTransition, IssueNotFound, ValidationError
from codemend.core.events import ISSUE_TRANSITIONED, EventBus
from codemend.knowledge.store import KnowledgeStore
from codemend.models.issue import Fix, Issue, IssueType, ReviewStatus, SafetyTier, Severity
from codemend.models.knowledge import KnowledgeType
from codemend.review.policies import ApproveAllPolicy, SafeTierPolicy, issue_needs_review
from codemend.review.service import ReviewService
from codemend.review.state_machine import is_valid_history
from codemend.storage.memory import InMemoryIssueStore, InMemoryKnowledgeBackend


def make_issue(severity=Severity.LOW, safety=SafetyTier.SAFE, confidence=0.9, with_fix=True, type=IssueType.STYLE):
    issue = Issue(file_path="app.py", line=3, type=type, severity=severity, message="print call", rule_id="DEBUG_OUTPUT")
    if with_fix:
        issue.fix = Fix(issue_id=issue.id, code="logger.debug(x)\n", original_code="print(x)\n",
                        start_line=3, end_line=3, safety=safety, raw_confidence=confidence)
    return issue


async def _pending(service, store, issue):
    await store.add_issue(issue)
    await service.submit(issue.id)
    return issue.id


def test_review_records_ordered_decisions_and_events():
    store = InMemoryIssueStore()
    events = EventBus()
    seen = []

    async def listener(event):
        seen.append(event.payload["to_status"])

    events.subscribe(ISSUE_TRANSITIONED, listener)
    service = ReviewService(store, events=events)

    async def scenario():
        issue_id = await _pending(service, store, make_issue())
        await service.review(issue_id, "approve", notes="looks fine")
        return await service.history(issue_id), await store.get_issue(issue_id)

    history, issue = asyncio.run(scenario())
    assert issue.status == ReviewStatus.APPROVED
    assert [d.to_status for d in history] == [ReviewStatus.PENDING_REVIEW, ReviewStatus.APPROVED]
    assert is_valid_history(history)
    assert seen == ["pending_review", "approved"]


def test_invalid_and_unknown_actions():
    store = InMemoryIssueStore()
    service = ReviewService(store)

    async def scenario():
        issue_id = await _pending(service, store, make_issue())
        with pytest.raises(ValidationError):
            await service.review(issue_id, "explode")
        with pytest.raises(ValidationError):
            await service.review(issue_id, "apply")
        with pytest.raises(IssueNotFound):
            await service.review("issue-missing", "approve")
        await service.review(issue_id, "reject")
        with pytest.raises(InvalidTransition):
            await service.review(issue_id, "approve")
        await service.reopen(issue_id)
        actions = [d.action.value for d in await service.history(issue_id)]
        return await store.get_issue(issue_id), actions

    issue, actions = asyncio.run(scenario())
    assert issue.status == ReviewStatus.PENDING_REVIEW
    assert actions[-3:] == ["reject", "reopen", "submit"]


def test_reopen_without_resubmit_stays_detected():
    store = InMemoryIssueStore()
    service = ReviewService(store)

    async def scenario():
        issue_id = await _pending(service, store, make_issue())
        await service.review(issue_id, "defer")
        decision = await service.reopen(issue_id, resubmit=False)
        return decision, await store.get_issue(issue_id)

    decision, issue = asyncio.run(scenario())
    assert decision.to_status == ReviewStatus.DETECTED
    assert issue.status == ReviewStatus.DETECTED


def test_concurrent_reviews_only_first_wins():
    store = InMemoryIssueStore()
    service = ReviewService(store)

    async def scenario():
        issue_id = await _pending(service, store, make_issue())
        results = await asyncio.gather(
            service.review(issue_id, "approve"),
            service.review(issue_id, "reject"),
            return_exceptions=True,
        )
        return results, await service.history(issue_id)

    results, history = asyncio.run(scenario())
    assert sum(isinstance(r, InvalidTransition) for r in results) == 1
    assert len(history) == 2
    assert is_valid_history(history)


def test_needs_review_rules():
    assert issue_needs_review(make_issue(severity=Severity.HIGH))
    assert issue_needs_review(make_issue(safety=SafetyTier.RISKY))
    assert issue_needs_review(make_issue(with_fix=False))
    assert not issue_needs_review(make_issue())


def test_policies_are_distinct():
    risky = make_issue(safety=SafetyTier.RISKY, confidence=0.95)
    unsure = make_issue(confidence=0.5)
    assert SafeTierPolicy(0.85).evaluate(risky)[0] is False
    assert SafeTierPolicy(0.85).evaluate(unsure)[0] is False
    assert SafeTierPolicy(0.85).evaluate(make_issue())[0] is True
    assert ApproveAllPolicy().evaluate(risky)[0] is True
    assert ApproveAllPolicy().evaluate(make_issue(with_fix=False))[0] is False


def test_batch_approval_learns_patterns():
    store = InMemoryIssueStore()
    knowledge = KnowledgeStore(InMemoryKnowledgeBackend())
    service = ReviewService(store, knowledge=knowledge)

    async def scenario():
        safe_ids = [await _pending(service, store, make_issue()) for _ in range(3)]
        risky_id = await _pending(service, store, make_issue(safety=SafetyTier.RISKY))
        result = await service.process_batch(SafeTierPolicy(0.85), issue_ids=safe_ids + [risky_id, "issue-nope"])
        decisions = await service.history(safe_ids[0])
        patterns = await knowledge.top(KnowledgeType.PATTERN)
        return safe_ids, risky_id, result, decisions, patterns

    safe_ids, risky_id, result, decisions, patterns = asyncio.run(scenario())
    assert result.approved == safe_ids
    assert risky_id in result.skipped
    assert result.failed == {"issue-nope": "not found"}
    assert result.processed == 4
    assert decisions[-1].actor == "policy"
    assert len(result.patterns_learned) == 1
    assert patterns[0].source == "batch-review"
    assert patterns[0].metadata["count"] == 3


def test_store_failure_fails_only_that_batch_item():
    class LockedOnce(InMemoryIssueStore):
        def __init__(self):
            super().__init__()
            self.fail_next_approval = True

        async def compare_and_set_status(self, issue_id, expected, new, decision):
            if new == ReviewStatus.APPROVED and self.fail_next_approval:
                self.fail_next_approval = False
                raise RuntimeError("database is locked")
            return await super().compare_and_set_status(issue_id, expected, new, decision)

    store = LockedOnce()
    service = ReviewService(store)

    async def scenario():
        ids = [await _pending(service, store, make_issue()) for _ in range(3)]
        result = await service.process_batch(SafeTierPolicy(0.85), issue_ids=ids)
        statuses = [(await store.get_issue(i)).status for i in ids]
        return ids, result, statuses

    ids, result, statuses = asyncio.run(scenario())
    assert result.failed == {ids[0]: "database is locked"}
    assert result.approved == ids[1:]
    assert result.processed == 3
    assert statuses == [ReviewStatus.PENDING_REVIEW, ReviewStatus.APPROVED, ReviewStatus.APPROVED]
