"""Issue store wrapper that routes every call through a circuit breaker.

``init`` and ``close`` bypass the breaker; a store that cannot start should
fail startup loudly instead of counting towards an OPEN circuit.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from codemend.models.issue import Fix, Issue, IssueType, Resolution, ReviewDecision, ReviewStatus, Severity
from codemend.resilience.circuit_breaker import CircuitBreaker
from codemend.storage.interfaces import IssueStore


class BreakerIssueStore(IssueStore):
    def __init__(self, inner: IssueStore, breaker: CircuitBreaker):
        self.inner = inner
        self.breaker = breaker

    async def init(self) -> None:
        await self.inner.init()

    async def close(self) -> None:
        await self.inner.close()

    async def add_issue(self, issue: Issue) -> Issue:
        return await self.breaker.call(self.inner.add_issue, issue)

    async def get_issue(self, issue_id: str) -> Optional[Issue]:
        return await self.breaker.call(self.inner.get_issue, issue_id)

    async def list_issues(
        self,
        status: Optional[ReviewStatus] = None,
        severity: Optional[Severity] = None,
        type: Optional[IssueType] = None,
        file_path: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Issue]:
        return await self.breaker.call(
            self.inner.list_issues,
            status=status,
            severity=severity,
            type=type,
            file_path=file_path,
            limit=limit,
            offset=offset,
        )

    async def compare_and_set_status(
        self, issue_id: str, expected: ReviewStatus, new: ReviewStatus, decision: ReviewDecision
    ) -> bool:
        # A lost race returns False; only raised errors count against the breaker.
        return await self.breaker.call(self.inner.compare_and_set_status, issue_id, expected, new, decision)

    async def decisions(self, issue_id: str) -> List[ReviewDecision]:
        return await self.breaker.call(self.inner.decisions, issue_id)

    async def attach_fix(self, issue_id: str, fix: Fix) -> Fix:
        return await self.breaker.call(self.inner.attach_fix, issue_id, fix)

    async def update_fix(self, fix: Fix) -> None:
        await self.breaker.call(self.inner.update_fix, fix)

    async def fixes(self, issue_id: str) -> List[Fix]:
        return await self.breaker.call(self.inner.fixes, issue_id)

    async def update_resolution(self, issue_id: str, resolution: Resolution) -> None:
        await self.breaker.call(self.inner.update_resolution, issue_id, resolution)

    async def statistics(self) -> Dict[str, Any]:
        return await self.breaker.call(self.inner.statistics)
