"""Store contracts used by the crawler, review service, knowledge store and
calibrator. Every store has an explicit ``init``/``close`` lifecycle.

Issues are never deleted, so no store exposes a delete operation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from codemend.models.calibration import CalibrationRecord
from codemend.models.issue import Fix, Issue, IssueType, Resolution, ReviewDecision, ReviewStatus, Severity
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType


class IssueStore(ABC):
    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def add_issue(self, issue: Issue) -> Issue:
        ...

    @abstractmethod
    async def get_issue(self, issue_id: str) -> Optional[Issue]:
        """Returns the issue with its active fix attached, or None."""

    @abstractmethod
    async def list_issues(
        self,
        status: Optional[ReviewStatus] = None,
        severity: Optional[Severity] = None,
        type: Optional[IssueType] = None,
        file_path: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Issue]:
        ...

    @abstractmethod
    async def compare_and_set_status(
        self, issue_id: str, expected: ReviewStatus, new: ReviewStatus, decision: ReviewDecision
    ) -> bool:
        """Atomically moves the issue from ``expected`` to ``new`` and appends ``decision``.

        Returns False, writing nothing, when the stored status is not ``expected``.
        """

    @abstractmethod
    async def decisions(self, issue_id: str) -> List[ReviewDecision]:
        """The audit log of the issue, oldest first."""

    @abstractmethod
    async def attach_fix(self, issue_id: str, fix: Fix) -> Fix:
        """Makes ``fix`` the active fix, superseding any previously active one."""

    @abstractmethod
    async def update_fix(self, fix: Fix) -> None:
        ...

    @abstractmethod
    async def fixes(self, issue_id: str) -> List[Fix]:
        """Every fix ever attached to the issue, oldest first."""

    @abstractmethod
    async def update_resolution(self, issue_id: str, resolution: Resolution) -> None:
        ...

    @abstractmethod
    async def statistics(self) -> Dict[str, Any]:
        ...


class KnowledgeBackend(ABC):
    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def put(self, entry: KnowledgeEntry) -> None:
        """Inserts or replaces the entry with ``entry.id``."""

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[KnowledgeEntry]:
        ...

    @abstractmethod
    async def all(self, type: Optional[KnowledgeType] = None) -> List[KnowledgeEntry]:
        ...

    @abstractmethod
    async def record_usage(self, entry_id: str, success: bool) -> Optional[KnowledgeEntry]:
        """Atomically increments usage (and success) counters; None for an unknown id."""


class OutcomeHistory(ABC):
    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def append(self, record: CalibrationRecord) -> None:
        ...

    @abstractmethod
    async def records(
        self, method: Optional[str] = None, domain: Optional[str] = None, limit: Optional[int] = None
    ) -> List[CalibrationRecord]:
        """Matching records, oldest first; ``limit`` keeps only the most recent ones."""
