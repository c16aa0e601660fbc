from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from codemend.crawler.manager import CrawlHandle
from codemend.knowledge.teams import Contributor, Team
from codemend.models.calibration import CalibrationReport, CalibrationResult
from codemend.models.crawl import CrawlOptions, CrawlStats, ManagerStatus
from codemend.models.issue import Fix, Issue, ReviewDecision
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.models.pipeline import PipelineResult
from codemend.resilience.circuit_breaker import CircuitBreakerState


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- crawl --------------------------------------------------------------------

class ApiCrawlOptions(ApiModel):
    auto_fix: Optional[bool] = None
    extensions: Optional[List[str]] = None
    skip_unchanged: Optional[bool] = None
    max_files: Optional[int] = Field(None, ge=1)
    concurrency: Optional[int] = Field(None, ge=1)

    def to_options(self) -> CrawlOptions:
        return CrawlOptions(**self.model_dump())


class ApiCrawlRequest(ApiModel):
    root_dir: str
    options: ApiCrawlOptions = Field(default_factory=ApiCrawlOptions)


class ApiParallelCrawlRequest(ApiModel):
    directories: List[str]
    options: ApiCrawlOptions = Field(default_factory=ApiCrawlOptions)


class ApiCrawlStats(ApiModel):
    files_scanned: int
    files_skipped: int
    files_with_issues: int
    issues_found: int
    issues_auto_fixed: int
    issues_auto_fix_dispatched: int
    issues_needing_review: int
    errors: int

    @classmethod
    def from_stats(cls, stats: CrawlStats) -> "ApiCrawlStats":
        return cls.model_validate(stats.model_dump(include=set(cls.model_fields)))


class ApiCrawlStatus(ApiModel):
    is_running: bool
    stats: ApiCrawlStats


class ApiCrawlResponse(ApiModel):
    success: bool
    message: str
    crawl_id: Optional[str] = None
    status: ApiCrawlStatus


class ApiQueueStatus(ApiModel):
    active: int
    queued: int
    completed: int
    concurrency: int

    @classmethod
    def from_status(cls, status: ManagerStatus) -> "ApiQueueStatus":
        return cls.model_validate(status.model_dump())


class ApiCrawlResult(ApiModel):
    success: bool
    target: str
    crawl_id: Optional[str] = None
    message: Optional[str] = None


class ApiParallelCrawlResponse(ApiModel):
    success: bool
    results: List[ApiCrawlResult]
    queue_status: ApiQueueStatus


class ApiCrawlHandle(ApiModel):
    crawl_id: str
    target: str
    state: str
    message: Optional[str] = None
    errors: int
    submitted_at: datetime
    finished_at: Optional[datetime] = None
    stats: Optional[ApiCrawlStats] = None

    @classmethod
    def from_handle(cls, handle: CrawlHandle) -> "ApiCrawlHandle":
        return cls(
            crawl_id=handle.crawl_id,
            target=handle.target,
            state=handle.state.value,
            message=handle.message,
            errors=handle.errors,
            submitted_at=handle.submitted_at,
            finished_at=handle.finished_at,
            stats=ApiCrawlStats.from_stats(handle.summary.stats) if handle.summary else None,
        )


class ApiParallelStatus(ApiModel):
    queue_status: ApiQueueStatus
    stats: ApiCrawlStats
    crawls: List[ApiCrawlHandle]


class ApiStopResponse(ApiModel):
    success: bool
    stopped: int


# -- issues -------------------------------------------------------------------

class ApiIssueError(ApiModel):
    type: str
    severity: str
    message: str
    file: str
    line: int
    column: int
    rule_id: str


class ApiFix(ApiModel):
    id: str
    safety: str
    confidence: float
    raw_confidence: float
    explanation: str
    method: str
    status: str
    code: str

    @classmethod
    def from_fix(cls, fix: Fix) -> "ApiFix":
        return cls(
            id=fix.id,
            safety=fix.safety.value,
            confidence=fix.effective_confidence,
            raw_confidence=fix.raw_confidence,
            explanation=fix.explanation,
            method=fix.method,
            status=fix.status.value,
            code=fix.code,
        )


class ApiIssue(ApiModel):
    id: str
    status: str
    error: ApiIssueError
    fix: Optional[ApiFix] = None
    detected_at: datetime
    resolution: Optional[Dict[str, Any]] = None

    @classmethod
    def from_issue(cls, issue: Issue) -> "ApiIssue":
        return cls(
            id=issue.id,
            status=issue.status.value,
            error=ApiIssueError(
                type=issue.type.value,
                severity=issue.severity.value,
                message=issue.message,
                file=issue.file_path,
                line=issue.line,
                column=issue.column,
                rule_id=issue.rule_id,
            ),
            fix=ApiFix.from_fix(issue.fix) if issue.fix else None,
            detected_at=issue.detected_at,
            resolution=issue.resolution.model_dump(mode="json") if issue.resolution else None,
        )


class ApiDecision(ApiModel):
    id: str
    action: str
    from_status: str
    to_status: str
    notes: str
    actor: str
    timestamp: datetime

    @classmethod
    def from_decision(cls, decision: ReviewDecision) -> "ApiDecision":
        return cls(
            id=decision.id,
            action=decision.action.value,
            from_status=decision.from_status.value,
            to_status=decision.to_status.value,
            notes=decision.notes,
            actor=decision.actor,
            timestamp=decision.timestamp,
        )


class ApiReviewRequest(ApiModel):
    action: str
    notes: str = ""
    actor: str = "reviewer"


class ApiReviewResponse(ApiModel):
    success: bool
    status: str
    decision: ApiDecision


class ApiBatchReviewRequest(ApiModel):
    policy: str = "safe-tier"
    issue_ids: Optional[List[str]] = None
    limit: int = Field(100, ge=1, le=1000)
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class ApiBatchReviewResponse(ApiModel):
    policy: str
    processed: int
    approved: List[str]
    skipped: Dict[str, str]
    failed: Dict[str, str]
    patterns_learned: List[str]


# -- fixes --------------------------------------------------------------------

class ApiOrchestrateRequest(ApiModel):
    issue_id: str
    wait: bool = True
    force: bool = False
    root: Optional[str] = None
    monitoring_window: Optional[float] = Field(None, ge=0.0)


class ApiStage(ApiModel):
    name: str
    status: str
    attempts: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class ApiMonitoring(ApiModel):
    session_id: str
    rollback_decision: Optional[bool] = None
    rollback_score: float
    strategy: Optional[str] = None
    end_state: Optional[str] = None
    reasons: List[str]


class ApiPipeline(ApiModel):
    pipeline_id: str
    issue_id: str
    state: str
    success: bool
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    risk_score: Optional[float] = None
    risk_level: Optional[str] = None
    fix: Optional[ApiFix] = None
    calibrated_confidence: Optional[float] = None
    monitoring: Optional[ApiMonitoring] = None
    stages: List[ApiStage]
    started_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_result(cls, result: PipelineResult) -> "ApiPipeline":
        session = result.monitoring
        return cls(
            pipeline_id=result.pipeline_id,
            issue_id=result.issue_id,
            state=result.state.value,
            success=result.success,
            failed_stage=result.failed_stage.value if result.failed_stage else None,
            error=result.error,
            risk_score=result.impact.risk_score if result.impact else None,
            risk_level=result.impact.risk_level if result.impact else None,
            fix=ApiFix.from_fix(result.fix) if result.fix else None,
            calibrated_confidence=result.calibrated_confidence,
            monitoring=ApiMonitoring(
                session_id=session.id,
                rollback_decision=session.rollback_decision,
                rollback_score=session.rollback_score,
                strategy=session.strategy,
                end_state=session.end_state.value if session.end_state else None,
                reasons=session.reasons,
            ) if session else None,
            stages=[
                ApiStage(
                    name=s.name.value,
                    status=s.status.value,
                    attempts=s.attempts,
                    started_at=s.started_at,
                    finished_at=s.finished_at,
                    error=s.error,
                )
                for s in result.stages
            ],
            started_at=result.started_at,
            finished_at=result.finished_at,
        )


class ApiCalibrateRequest(ApiModel):
    raw_confidence: float = Field(..., ge=0.0, le=1.0)
    method: str = "unknown"
    domain: str = "unknown"
    file_path: Optional[str] = None


class ApiCalibrateResponse(ApiModel):
    original: float
    calibrated: float
    sample_count: int
    bucket: str
    lower: float
    upper: float
    reliability: str

    @classmethod
    def from_result(cls, result: CalibrationResult) -> "ApiCalibrateResponse":
        return cls(
            original=result.original,
            calibrated=result.calibrated,
            sample_count=result.sample_count,
            bucket=result.bucket,
            lower=result.interval.lower,
            upper=result.interval.upper,
            reliability=result.reliability,
        )


class ApiRecordOutcomeRequest(ApiModel):
    fix_id: str
    predicted: float = Field(..., ge=0.0, le=1.0)
    success: bool
    method: str = "unknown"
    domain: str = "unknown"


class ApiCalibrationReport(ApiModel):
    method: Optional[str] = None
    domain: Optional[str] = None
    sample_count: int
    mean_predicted: float
    mean_actual: float
    calibration_error: float
    mean_absolute_error: float
    expected_calibration_error: float
    bias: float
    reliability: str
    recommendations: List[str]

    @classmethod
    def from_report(cls, report: CalibrationReport) -> "ApiCalibrationReport":
        return cls.model_validate(report.model_dump(exclude={"bands"}))


# -- knowledge & health ---------------------------------------------------------

class ApiKnowledgeRequest(ApiModel):
    type: KnowledgeType
    content: str = Field(..., min_length=1)
    source: str = "api"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_entry(self) -> KnowledgeEntry:
        return KnowledgeEntry(**self.model_dump())


class ApiKnowledgeEntry(ApiModel):
    id: str
    type: str
    content: str
    source: str
    confidence: float
    usage_count: int
    success_count: int
    success_rate: float
    tags: List[str]
    metadata: Dict[str, Any]
    updated_at: datetime
    score: Optional[float] = None
    similarity: Optional[float] = None

    @classmethod
    def from_entry(
        cls, entry: KnowledgeEntry, score: Optional[float] = None, similarity: Optional[float] = None
    ) -> "ApiKnowledgeEntry":
        return cls(
            **entry.model_dump(exclude={"embedding", "created_at", "type"}),
            type=entry.type.value,
            score=score,
            similarity=similarity,
        )


class ApiAddKnowledgeResponse(ApiModel):
    status: str
    entry: ApiKnowledgeEntry



class ApiContributor(ApiModel):
    id: str = Field(..., min_length=1)
    categories: List[str] = Field(default_factory=list)
    file_types: List[str] = Field(default_factory=list)

    def to_contributor(self) -> Contributor:
        return Contributor(id=self.id, categories=set(self.categories), file_types=set(self.file_types))


class ApiTeamsRequest(ApiModel):
    contributors: List[ApiContributor]
    min_size: int = 3
    max_size: int = 3
    min_score: float = Field(0.5, ge=0.0, le=1.0)


class ApiTeam(ApiModel):
    name: str
    members: List[str]
    score: float
    complementarity: float
    specialization: Optional[str] = None
    categories: List[str]
    file_types: List[str]

    @classmethod
    def from_team(cls, team: Team) -> "ApiTeam":
        return cls(name=team.name, **team.model_dump(exclude={"category_coverage", "file_type_coverage"}))


class ApiTeamsResponse(ApiModel):
    teams: List[ApiTeam]
    stored: int
    duplicate: int


class ApiUsageRequest(ApiModel):
    success: bool


class ApiBreaker(ApiModel):
    name: str
    state: str
    failure_count: int
    total_calls: int
    total_failures: int
    total_short_circuits: int

    @classmethod
    def from_state(cls, state: CircuitBreakerState) -> "ApiBreaker":
        return cls(**state.model_dump(exclude={"state", "last_failure_at", "open_until"}), state=state.state.value.lower())
