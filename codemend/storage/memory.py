"""In-memory stores for tests and ephemeral runs.

Objects are copied on the way in and out so callers never share mutable
state with the store.
"""
from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from codemend.models.calibration import CalibrationRecord
from codemend.models.issue import (
    Fix,
    FixStatus,
    Issue,
    IssueType,
    Resolution,
    ReviewDecision,
    ReviewStatus,
    Severity,
)
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.storage.interfaces import IssueStore, KnowledgeBackend, OutcomeHistory


class InMemoryIssueStore(IssueStore):
    def __init__(self) -> None:
        self._issues: Dict[str, Issue] = {}
        self._fixes: Dict[str, List[Fix]] = defaultdict(list)
        self._decisions: Dict[str, List[ReviewDecision]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _with_fix(self, issue: Issue) -> Issue:
        active = next((f for f in self._fixes.get(issue.id, []) if f.active), None)
        copy = issue.model_copy(deep=True)
        copy.fix = active.model_copy(deep=True) if active else None
        return copy

    async def add_issue(self, issue: Issue) -> Issue:
        async with self._lock:
            stored = issue.model_copy(deep=True)
            fix = stored.fix
            stored.fix = None
            self._issues[stored.id] = stored
            if fix is not None:
                self._fixes[stored.id].append(fix.model_copy(update={"issue_id": stored.id, "active": True}))
            return self._with_fix(stored)

    async def get_issue(self, issue_id: str) -> Optional[Issue]:
        issue = self._issues.get(issue_id)
        return self._with_fix(issue) if issue else None

    async def list_issues(
        self,
        status: Optional[ReviewStatus] = None,
        severity: Optional[Severity] = None,
        type: Optional[IssueType] = None,
        file_path: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Issue]:
        matched = [
            i for i in self._issues.values()
            if (status is None or i.status == status)
            and (severity is None or i.severity == severity)
            and (type is None or i.type == type)
            and (file_path is None or i.file_path == file_path)
        ]
        matched.sort(key=lambda i: i.detected_at)
        return [self._with_fix(i) for i in matched[offset:offset + limit]]

    async def compare_and_set_status(
        self, issue_id: str, expected: ReviewStatus, new: ReviewStatus, decision: ReviewDecision
    ) -> bool:
        async with self._lock:
            issue = self._issues.get(issue_id)
            if issue is None or issue.status != expected:
                return False
            issue.status = new
            self._decisions[issue_id].append(decision)
            return True

    async def decisions(self, issue_id: str) -> List[ReviewDecision]:
        return list(self._decisions.get(issue_id, []))

    async def attach_fix(self, issue_id: str, fix: Fix) -> Fix:
        async with self._lock:
            history = self._fixes[issue_id]
            for i, existing in enumerate(history):
                if existing.active:
                    status = FixStatus.SUPERSEDED if existing.status == FixStatus.PROPOSED else existing.status
                    history[i] = existing.model_copy(update={"active": False, "status": status})
            stored = fix.model_copy(update={"issue_id": issue_id, "active": True}, deep=True)
            history.append(stored)
            return stored.model_copy(deep=True)

    async def update_fix(self, fix: Fix) -> None:
        async with self._lock:
            history = self._fixes.get(fix.issue_id, [])
            for i, existing in enumerate(history):
                if existing.id == fix.id:
                    history[i] = fix.model_copy(deep=True)
                    return
            raise KeyError(fix.id)

    async def fixes(self, issue_id: str) -> List[Fix]:
        return [f.model_copy(deep=True) for f in self._fixes.get(issue_id, [])]

    async def update_resolution(self, issue_id: str, resolution: Resolution) -> None:
        async with self._lock:
            issue = self._issues.get(issue_id)
            if issue is not None:
                issue.resolution = resolution.model_copy()

    async def statistics(self) -> Dict[str, Any]:
        issues = list(self._issues.values())
        return {
            "total": len(issues),
            "by_status": dict(Counter(i.status.value for i in issues)),
            "by_severity": dict(Counter(i.severity.value for i in issues)),
            "by_type": dict(Counter(i.type.value for i in issues)),
        }


class InMemoryKnowledgeBackend(KnowledgeBackend):
    def __init__(self) -> None:
        self._entries: Dict[str, KnowledgeEntry] = {}
        self._lock = asyncio.Lock()

    async def put(self, entry: KnowledgeEntry) -> None:
        async with self._lock:
            self._entries[entry.id] = entry.model_copy(deep=True)

    async def get(self, entry_id: str) -> Optional[KnowledgeEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def all(self, type: Optional[KnowledgeType] = None) -> List[KnowledgeEntry]:
        return [e.model_copy(deep=True) for e in self._entries.values() if type is None or e.type == type]

    async def record_usage(self, entry_id: str, success: bool) -> Optional[KnowledgeEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            updated = entry.model_copy(
                update={
                    "usage_count": entry.usage_count + 1,
                    "success_count": entry.success_count + (1 if success else 0),
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._entries[entry_id] = updated
            return updated.model_copy(deep=True)


class InMemoryOutcomeHistory(OutcomeHistory):
    def __init__(self) -> None:
        self._records: List[CalibrationRecord] = []

    async def append(self, record: CalibrationRecord) -> None:
        self._records.append(record)

    async def records(
        self, method: Optional[str] = None, domain: Optional[str] = None, limit: Optional[int] = None
    ) -> List[CalibrationRecord]:
        matched = [
            r for r in self._records
            if (method is None or r.method == method) and (domain is None or r.domain == domain)
        ]
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched
