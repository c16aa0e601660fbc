import asyncio

import pytest

from codemend.config.breaker import BreakerConfig
from codemend.core.errors import DependencyOpen
from codemend.models.issue import Issue, IssueType, ReviewAction, ReviewDecision, ReviewStatus, Severity
from codemend.resilience.circuit_breaker import BreakerState, CircuitBreaker
from codemend.storage.guarded import BreakerIssueStore
from codemend.storage.memory import InMemoryIssueStore


class DeadStore(InMemoryIssueStore):
    def __init__(self):
        super().__init__()
        self.down = False
        self.calls = 0

    async def compare_and_set_status(self, issue_id, expected, new, decision):
        self.calls += 1
        if self.down:
            raise ConnectionError("database unreachable")
        return await super().compare_and_set_status(issue_id, expected, new, decision)


def _guarded(threshold=5):
    inner = DeadStore()
    config = BreakerConfig(failure_threshold=threshold, reset_timeout=30.0, call_timeout=None)
    return inner, BreakerIssueStore(inner, CircuitBreaker("issue_store", config))


def _submit(issue_id):
    return ReviewDecision(
        issue_id=issue_id,
        action=ReviewAction.SUBMIT,
        from_status=ReviewStatus.DETECTED,
        to_status=ReviewStatus.PENDING_REVIEW,
        actor="test",
    )


def test_delegates_to_the_wrapped_store():
    inner, store = _guarded()
    issue = Issue(file_path="a.py", line=1, type=IssueType.BUG, severity=Severity.LOW, message="m")

    async def scenario():
        await store.add_issue(issue)
        moved = await store.compare_and_set_status(
            issue.id, ReviewStatus.DETECTED, ReviewStatus.PENDING_REVIEW, _submit(issue.id)
        )
        lost = await store.compare_and_set_status(
            issue.id, ReviewStatus.DETECTED, ReviewStatus.PENDING_REVIEW, _submit(issue.id)
        )
        return moved, lost, await store.list_issues(status=ReviewStatus.PENDING_REVIEW)

    moved, lost, pending = asyncio.run(scenario())
    assert moved is True
    assert lost is False
    assert [i.id for i in pending] == [issue.id]
    # a lost compare-and-set is an answer, not a failure
    assert store.breaker.state == BreakerState.CLOSED


def test_dead_backend_opens_the_breaker_and_stops_reaching_it():
    inner, store = _guarded(threshold=5)
    inner.down = True

    async def scenario():
        for _ in range(5):
            with pytest.raises(ConnectionError):
                await store.compare_and_set_status(
                    "issue-1", ReviewStatus.DETECTED, ReviewStatus.PENDING_REVIEW, _submit("issue-1")
                )
        with pytest.raises(DependencyOpen) as raised:
            await store.compare_and_set_status(
                "issue-1", ReviewStatus.DETECTED, ReviewStatus.PENDING_REVIEW, _submit("issue-1")
            )
        return raised.value

    error = asyncio.run(scenario())
    assert error.dependency == "issue_store"
    assert error.retry_after > 0
    assert inner.calls == 5
    assert store.breaker.state == BreakerState.OPEN
