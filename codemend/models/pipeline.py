from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from codemend.models.issue import Fix
from codemend.models.monitoring import MonitoringSession


class PipelineStage(str, Enum):
    PREDICT_IMPACT = "predict_impact"
    GENERATE_FIX = "generate_fix"
    CALIBRATE_CONFIDENCE = "calibrate_confidence"
    APPLY = "apply"
    MONITOR = "monitor"
    ROLLBACK_DECISION = "rollback_decision"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineState(str, Enum):
    RUNNING = "running"
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


class StageRecord(BaseModel):
    name: PipelineStage
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class ImpactReport(BaseModel):
    file_path: str
    risk_score: float = Field(0.0, ge=0.0, le=1.0)
    risk_level: str = "low"
    dependent_files: List[str] = Field(default_factory=list)
    breaking_changes: List[str] = Field(default_factory=list)
    cascade_candidates: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = 0.5


class PipelineResult(BaseModel):
    pipeline_id: str
    issue_id: str
    state: PipelineState = PipelineState.RUNNING
    failed_stage: Optional[PipelineStage] = None
    error: Optional[str] = None
    impact: Optional[ImpactReport] = None
    fix: Optional[Fix] = None
    calibrated_confidence: Optional[float] = None
    monitoring: Optional[MonitoringSession] = None
    stages: List[StageRecord] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.state == PipelineState.RESOLVED

    def stage(self, name: PipelineStage) -> Optional[StageRecord]:
        for record in self.stages:
            if record.name == name:
                return record
        return None
