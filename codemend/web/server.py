from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from codemend.app import Services
from codemend.core.errors import (
    CodemendError,
    CrawlInProgress,
    DependencyOpen,
    EntryNotFound,
    InvalidTransition,
    IssueNotFound,
    ValidationError,
)
from codemend.models.calibration import CalibrationContext
from codemend.models.crawl import CrawlState
from codemend.models.issue import IssueType, ReviewStatus, Severity
from codemend.models.knowledge import KnowledgeFilters, KnowledgeType
from codemend.models.pipeline import PipelineState
from codemend.pipeline.orchestrator import FixContext
from codemend.review.policies import ApproveAllPolicy, SafeTierPolicy
from codemend.web.api_models import (
    ApiAddKnowledgeResponse,
    ApiBatchReviewRequest,
    ApiBatchReviewResponse,
    ApiBreaker,
    ApiCalibrateRequest,
    ApiCalibrateResponse,
    ApiCalibrationReport,
    ApiCrawlHandle,
    ApiCrawlRequest,
    ApiCrawlResponse,
    ApiCrawlResult,
    ApiCrawlStats,
    ApiCrawlStatus,
    ApiDecision,
    ApiIssue,
    ApiKnowledgeEntry,
    ApiKnowledgeRequest,
    ApiOrchestrateRequest,
    ApiParallelCrawlRequest,
    ApiParallelCrawlResponse,
    ApiParallelStatus,
    ApiPipeline,
    ApiQueueStatus,
    ApiRecordOutcomeRequest,
    ApiReviewRequest,
    ApiReviewResponse,
    ApiStopResponse,
    ApiTeam,
    ApiTeamsRequest,
    ApiTeamsResponse,
    ApiUsageRequest,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS = [
    (ValidationError, 400),
    (IssueNotFound, 404),
    (EntryNotFound, 404),
    (InvalidTransition, 409),
    (CrawlInProgress, 409),
    (DependencyOpen, 503),
]


def status_for(error: CodemendError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(title="codemend", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(CodemendError)
    async def handle_codemend_error(request: Request, exc: CodemendError):
        status = status_for(exc)
        headers = {}
        if isinstance(exc, DependencyOpen):
            headers["Retry-After"] = str(max(1, int(exc.retry_after)))
        if status >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": type(exc).__name__, "message": str(exc)},
            headers=headers,
        )

    def crawl_status() -> ApiCrawlStatus:
        manager = services.crawl_manager
        return ApiCrawlStatus(
            is_running=manager.get_status().active > 0,
            stats=ApiCrawlStats.from_stats(manager.aggregate_stats()),
        )

    # -- crawl ----------------------------------------------------------------

    @app.post("/crawl", response_model=ApiCrawlResponse)
    async def start_crawl(body: ApiCrawlRequest):
        manager = services.crawl_manager
        if manager.active_handle(body.root_dir) is not None:
            raise CrawlInProgress(body.root_dir)
        handle = manager.start_parallel_crawls([body.root_dir], body.options.to_options())[0]
        if handle.state == CrawlState.REJECTED:
            raise ValidationError(handle.message or f"Cannot crawl {body.root_dir}")
        return ApiCrawlResponse(
            success=True,
            message=f"Crawl started for {handle.target}",
            crawl_id=handle.crawl_id,
            status=crawl_status(),
        )

    @app.get("/crawl/status", response_model=ApiCrawlStatus)
    async def get_crawl_status():
        return crawl_status()

    @app.post("/crawl/parallel", response_model=ApiParallelCrawlResponse)
    async def start_parallel_crawl(body: ApiParallelCrawlRequest):
        if not body.directories:
            raise ValidationError("At least one directory is required")
        manager = services.crawl_manager
        handles = manager.start_parallel_crawls(body.directories, body.options.to_options())
        results = [
            ApiCrawlResult(
                success=h.accepted,
                target=h.target,
                crawl_id=h.crawl_id if h.accepted else None,
                message=h.message,
            )
            for h in handles
        ]
        return ApiParallelCrawlResponse(
            success=all(r.success for r in results),
            results=results,
            queue_status=ApiQueueStatus.from_status(manager.get_status()),
        )

    @app.get("/crawl/parallel/status", response_model=ApiParallelStatus)
    async def get_parallel_status():
        manager = services.crawl_manager
        return ApiParallelStatus(
            queue_status=ApiQueueStatus.from_status(manager.get_status()),
            stats=ApiCrawlStats.from_stats(manager.aggregate_stats()),
            crawls=[ApiCrawlHandle.from_handle(h) for h in manager.handles()],
        )

    @app.post("/crawl/stop", response_model=ApiStopResponse)
    async def stop_crawls():
        stopped = services.crawl_manager.stop_all()
        return ApiStopResponse(success=True, stopped=stopped)

    # -- issues ---------------------------------------------------------------

    @app.get("/issues", response_model=List[ApiIssue])
    async def list_issues(
        status: Optional[ReviewStatus] = None,
        severity: Optional[Severity] = None,
        type: Optional[IssueType] = None,
        file: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        issues = await services.issue_store.list_issues(
            status=status, severity=severity, type=type, file_path=file, limit=limit, offset=offset
        )
        return [ApiIssue.from_issue(i) for i in issues]

    @app.get("/issues/review", response_model=List[ApiIssue])
    async def review_queue(limit: int = Query(100, ge=1, le=1000), offset: int = Query(0, ge=0)):
        issues = await services.review.review_queue(limit=limit, offset=offset)
        return [ApiIssue.from_issue(i) for i in issues]

    @app.post("/issues/review/batch", response_model=ApiBatchReviewResponse)
    async def batch_review(body: ApiBatchReviewRequest):
        if body.policy == SafeTierPolicy.name:
            min_confidence = body.min_confidence
            if min_confidence is None:
                min_confidence = services.config.review.auto_approve_min_confidence
            policy = SafeTierPolicy(min_confidence)
        elif body.policy == ApproveAllPolicy.name:
            policy = ApproveAllPolicy()
        else:
            raise ValidationError(f"Unknown approval policy '{body.policy}'")
        result = await services.review.process_batch(policy, issue_ids=body.issue_ids, limit=body.limit)
        return ApiBatchReviewResponse.model_validate(result.model_dump())

    @app.get("/issues/{issue_id}", response_model=ApiIssue)
    async def get_issue(issue_id: str):
        issue = await services.issue_store.get_issue(issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        return ApiIssue.from_issue(issue)

    @app.get("/issues/{issue_id}/decisions", response_model=List[ApiDecision])
    async def get_decisions(issue_id: str):
        return [ApiDecision.from_decision(d) for d in await services.review.history(issue_id)]

    @app.post("/issues/{issue_id}/review", response_model=ApiReviewResponse)
    async def review_issue(issue_id: str, body: ApiReviewRequest):
        decision = await services.review.review(issue_id, body.action, notes=body.notes, actor=body.actor)
        return ApiReviewResponse(
            success=True, status=decision.to_status.value, decision=ApiDecision.from_decision(decision)
        )

    @app.post("/issues/{issue_id}/reopen", response_model=ApiReviewResponse)
    async def reopen_issue(issue_id: str, body: Optional[ApiReviewRequest] = None):
        notes = body.notes if body else ""
        actor = body.actor if body else "reviewer"
        decision = await services.review.reopen(issue_id, notes=notes, actor=actor)
        return ApiReviewResponse(
            success=True, status=decision.to_status.value, decision=ApiDecision.from_decision(decision)
        )

    # -- fixes ----------------------------------------------------------------

    @app.post("/fixes/orchestrate", response_model=ApiPipeline)
    async def orchestrate(body: ApiOrchestrateRequest):
        context = FixContext(root=body.root, force=body.force, monitoring_window=body.monitoring_window)
        if body.wait:
            result = await services.orchestrator.orchestrate_fix(body.issue_id, context)
        else:
            result = await services.orchestrator.start(body.issue_id, context)
        return ApiPipeline.from_result(result)

    @app.get("/fixes/pipelines", response_model=List[ApiPipeline])
    async def list_pipelines(state: Optional[PipelineState] = None):
        return [ApiPipeline.from_result(p) for p in services.orchestrator.list_pipelines(state)]

    @app.get("/fixes/pipelines/{pipeline_id}", response_model=ApiPipeline)
    async def get_pipeline(pipeline_id: str):
        result = services.orchestrator.get_pipeline_status(pipeline_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Pipeline not found: {pipeline_id}")
        return ApiPipeline.from_result(result)

    @app.post("/fixes/calibrate-confidence", response_model=ApiCalibrateResponse)
    async def calibrate_confidence(body: ApiCalibrateRequest):
        context = CalibrationContext(method=body.method, domain=body.domain, file_path=body.file_path)
        result = await services.calibrator.calibrate_detailed(body.raw_confidence, context)
        return ApiCalibrateResponse.from_result(result)

    @app.post("/fixes/record-outcome")
    async def record_outcome(body: ApiRecordOutcomeRequest):
        context = CalibrationContext(method=body.method, domain=body.domain)
        await services.calibrator.record_outcome(body.fix_id, body.predicted, body.success, context)
        return {"success": True}

    @app.get("/fixes/calibration-report", response_model=ApiCalibrationReport)
    async def calibration_report(method: Optional[str] = None, domain: Optional[str] = None):
        report = await services.calibrator.get_calibration_report(method=method, domain=domain)
        return ApiCalibrationReport.from_report(report)

    # -- knowledge ------------------------------------------------------------

    @app.get("/knowledge/search", response_model=List[ApiKnowledgeEntry])
    async def search_knowledge(
        q: str = "",
        type: Optional[KnowledgeType] = None,
        tag: Optional[List[str]] = Query(None),
        source: Optional[str] = None,
        min_confidence: float = Query(0.0, ge=0.0, le=1.0, alias="minConfidence"),
        limit: int = Query(10, ge=1, le=500),
    ):
        filters = KnowledgeFilters(type=type, tags=tag or [], source=source, min_confidence=min_confidence, limit=limit)
        results = await services.knowledge.search(q, filters)
        return [ApiKnowledgeEntry.from_entry(r.entry, r.score, r.similarity) for r in results]

    @app.post("/knowledge", response_model=ApiAddKnowledgeResponse)
    async def add_knowledge(body: ApiKnowledgeRequest):
        result = await services.knowledge.add_knowledge(body.to_entry())
        return ApiAddKnowledgeResponse(status=result.status, entry=ApiKnowledgeEntry.from_entry(result.entry))

    @app.post("/knowledge/teams", response_model=ApiTeamsResponse)
    async def detect_teams(body: ApiTeamsRequest):
        teams, counts = await services.knowledge.detect_and_record_teams(
            [c.to_contributor() for c in body.contributors],
            min_size=body.min_size,
            max_size=body.max_size,
            min_score=body.min_score,
        )
        return ApiTeamsResponse(
            teams=[ApiTeam.from_team(t) for t in teams], stored=counts["stored"], duplicate=counts["duplicate"]
        )

    @app.post("/knowledge/{entry_id}/usage", response_model=ApiKnowledgeEntry)
    async def record_usage(entry_id: str, body: ApiUsageRequest):
        entry = await services.knowledge.record_usage(entry_id, body.success)
        return ApiKnowledgeEntry.from_entry(entry)

    @app.get("/health/breakers", response_model=List[ApiBreaker])
    async def breakers():
        return [ApiBreaker.from_state(s) for s in services.breakers.snapshot()]

    @app.post("/health/breakers/reset", response_model=List[ApiBreaker])
    async def reset_breakers():
        services.breakers.reset_all()
        logger.warning("breakers_reset")
        return [ApiBreaker.from_state(s) for s in services.breakers.snapshot()]

    return app
