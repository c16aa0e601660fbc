from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class IssueType(str, Enum):
    SECURITY = "security"
    BUG = "bug"
    ERROR_HANDLING = "error-handling"
    PERFORMANCE = "performance"
    BEST_PRACTICE = "best-practice"
    MAINTAINABILITY = "maintainability"
    STYLE = "style"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


class ReviewStatus(str, Enum):
    DETECTED = "detected"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    FIX_APPLIED = "fix_applied"
    MONITORING = "monitoring"
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"


class ReviewAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    DEFER = "defer"
    APPLY = "apply"
    MONITOR = "monitor"
    RESOLVE = "resolve"
    ROLLBACK = "rollback"
    REOPEN = "reopen"


# Actions a human reviewer may send through the review API.
REVIEWER_ACTIONS = (ReviewAction.APPROVE, ReviewAction.REJECT, ReviewAction.DEFER)


class SafetyTier(str, Enum):
    SAFE = "safe"
    MEDIUM = "medium"
    RISKY = "risky"


class FixStatus(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    RESOLVED = "resolved"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"


class Resolution(BaseModel):
    outcome: str
    pipeline_id: Optional[str] = None
    fix_id: Optional[str] = None
    notes: str = ""
    resolved_at: datetime = Field(default_factory=_now)


class Fix(BaseModel):
    """A proposed remediation for one issue.

    ``code`` replaces lines ``start_line``..``end_line`` of the issue's file;
    ``original_code`` is the text those lines held when the fix was proposed.
    """

    id: str = Field(default_factory=lambda: new_id("fix"))
    issue_id: str
    code: str
    original_code: str = ""
    start_line: int
    end_line: int
    safety: SafetyTier = SafetyTier.MEDIUM
    raw_confidence: float = Field(0.5, ge=0.0, le=1.0)
    calibrated_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    method: str = "unknown"
    explanation: str = ""
    knowledge_entry_id: Optional[str] = None
    status: FixStatus = FixStatus.PROPOSED
    active: bool = True
    created_at: datetime = Field(default_factory=_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_confidence(self) -> float:
        if self.calibrated_confidence is not None:
            return self.calibrated_confidence
        return self.raw_confidence


class Issue(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("issue"))
    file_path: str
    line: int = Field(1, ge=1)
    column: int = 0
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    type: IssueType = Field(..., frozen=True)
    severity: Severity = Field(..., frozen=True)
    message: str
    rule_id: str = "unknown"
    tags: List[str] = Field(default_factory=list)
    code_snippet: str = ""
    crawl_id: Optional[str] = None
    detected_at: datetime = Field(default_factory=_now)
    status: ReviewStatus = ReviewStatus.DETECTED
    resolution: Optional[Resolution] = None
    fix: Optional[Fix] = Field(None, description="The active fix, when one is attached.")

    @property
    def last_line(self) -> int:
        return self.end_line or self.line

    @property
    def domain(self) -> str:
        return self.type.value


class ReviewDecision(BaseModel):
    """Append-only audit record of one transition of an issue."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("decision"))
    issue_id: str
    action: ReviewAction
    from_status: ReviewStatus
    to_status: ReviewStatus
    notes: str = ""
    actor: str = "system"
    timestamp: datetime = Field(default_factory=_now)
