from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from codemend.models.issue import new_id


class SessionEndState(str, Enum):
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"
    EXPIRED = "expired"


class MonitoringSignal(BaseModel):
    """One observation of post-application health for a fix."""

    source: str = "unknown"
    new_errors: int = 0
    test_failures: int = 0
    performance_issues: int = 0
    cascade_failures: int = 0
    error_rate: float = 0.0
    details: List[str] = Field(default_factory=list)
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def merge(self, other: "MonitoringSignal") -> "MonitoringSignal":
        return MonitoringSignal(
            source=f"{self.source}+{other.source}",
            new_errors=self.new_errors + other.new_errors,
            test_failures=self.test_failures + other.test_failures,
            performance_issues=self.performance_issues + other.performance_issues,
            cascade_failures=self.cascade_failures + other.cascade_failures,
            error_rate=max(self.error_rate, other.error_rate),
            details=self.details + other.details,
        )

    @property
    def clean(self) -> bool:
        return not (
            self.new_errors or self.test_failures or self.performance_issues
            or self.cascade_failures or self.error_rate > 0
        )


class MonitoringSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("mon"))
    fix_id: str
    issue_id: str
    file_path: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    window_seconds: float = 0.0
    signals: List[MonitoringSignal] = Field(default_factory=list)
    rollback_score: float = 0.0
    rollback_decision: Optional[bool] = None
    reasons: List[str] = Field(default_factory=list)
    strategy: Optional[str] = None
    end_state: Optional[SessionEndState] = None
