"""Per-issue fix pipeline.

Stages run in order: predict_impact, generate_fix, calibrate_confidence,
apply, monitor, rollback_decision. Each stage has a timeout and retries
transient errors ``stage_retries`` times; any other failure ends the
pipeline in ``failed`` with the stage recorded. The issue keeps whatever
state it last reached through the review state machine.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog
from pydantic import BaseModel

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.pipeline import PipelineConfig
from codemend.core.errors import (
    CodemendError,
    DependencyOpen,
    GeneratorUnavailable,
    InvalidTransition,
    IssueNotFound,
    PipelineFailed,
    StageTimeout,
    TransientError,
    ValidationError,
)
from codemend.core.events import FIX_ROLLED_BACK, PIPELINE_COMPLETED, PIPELINE_FAILED, PIPELINE_STARTED, EventBus
from codemend.crawler.files import read_lines
from codemend.knowledge.store import KnowledgeStore
from codemend.models.calibration import CalibrationContext
from codemend.models.issue import Fix, FixStatus, Issue, Resolution, ReviewAction, ReviewStatus, new_id
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.models.monitoring import MonitoringSession, SessionEndState
from codemend.models.pipeline import (
    ImpactReport,
    PipelineResult,
    PipelineStage,
    PipelineState,
    StageRecord,
    StageStatus,
)
from codemend.pipeline.applier import ApplyResult, FixApplier
from codemend.pipeline.generator import FixGenerator
from codemend.pipeline.impact import ImpactPredictor
from codemend.pipeline.monitor import FixMonitor, MonitorContext
from codemend.resilience.circuit_breaker import CircuitBreaker
from codemend.review.service import ReviewService
from codemend.storage.interfaces import IssueStore

logger = structlog.get_logger(__name__)

STAGE_ORDER = [
    PipelineStage.PREDICT_IMPACT,
    PipelineStage.GENERATE_FIX,
    PipelineStage.CALIBRATE_CONFIDENCE,
    PipelineStage.APPLY,
    PipelineStage.MONITOR,
    PipelineStage.ROLLBACK_DECISION,
]

PIPELINE_ACTOR = "pipeline"


class FixContext(BaseModel):
    root: Optional[str] = None
    force: bool = False
    monitoring_window: Optional[float] = None
    notes: str = ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FixOrchestrator:
    def __init__(
        self,
        issue_store: IssueStore,
        review: ReviewService,
        calibrator: ConfidenceCalibrator,
        applier: FixApplier,
        monitor: FixMonitor,
        impact: Optional[ImpactPredictor] = None,
        generator: Optional[FixGenerator] = None,
        generator_breaker: Optional[CircuitBreaker] = None,
        knowledge: Optional[KnowledgeStore] = None,
        config: Optional[PipelineConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.issue_store = issue_store
        self.review = review
        self.calibrator = calibrator
        self.applier = applier
        self.monitor = monitor
        self.impact = impact or ImpactPredictor(issue_store)
        self.generator = generator
        self.generator_breaker = generator_breaker
        self.knowledge = knowledge
        self.config = config or PipelineConfig.default()
        self.events = events

        self._pipelines: "OrderedDict[str, PipelineResult]" = OrderedDict()
        self._active_issues: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}

    # -- public API -------------------------------------------------------

    async def orchestrate_fix(self, issue_id: str, context: Optional[FixContext] = None) -> PipelineResult:
        """Runs the whole pipeline for an approved issue and returns its final result."""
        result, issue = await self._prepare(issue_id)
        return await self._execute(result, issue, context or FixContext())

    async def start(self, issue_id: str, context: Optional[FixContext] = None) -> PipelineResult:
        """Validates the issue, then runs the pipeline in the background."""
        result, issue = await self._prepare(issue_id)
        task = asyncio.create_task(self._execute(result, issue, context or FixContext()))
        self._tasks[result.pipeline_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(result.pipeline_id, None))
        return result

    def get_pipeline_status(self, pipeline_id: str) -> Optional[PipelineResult]:
        return self._pipelines.get(pipeline_id)

    def list_pipelines(self, state: Optional[PipelineState] = None) -> List[PipelineResult]:
        return [p for p in self._pipelines.values() if state is None or p.state == state]

    async def wait(self, pipeline_id: str) -> Optional[PipelineResult]:
        task = self._tasks.get(pipeline_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._pipelines.get(pipeline_id)

    async def wait_all(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- pipeline ---------------------------------------------------------

    async def _prepare(self, issue_id: str):
        issue = await self.issue_store.get_issue(issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        if issue.status != ReviewStatus.APPROVED:
            raise InvalidTransition(issue.status.value, ReviewAction.APPLY.value, issue_id)
        if issue_id in self._active_issues:
            raise ValidationError(f"A fix pipeline is already running for issue {issue_id}")

        self._active_issues.add(issue_id)
        result = PipelineResult(
            pipeline_id=new_id("pipeline"),
            issue_id=issue_id,
            stages=[StageRecord(name=stage) for stage in STAGE_ORDER],
        )
        self._remember(result)
        return result, issue

    def _remember(self, result: PipelineResult) -> None:
        self._pipelines[result.pipeline_id] = result
        while len(self._pipelines) > self.config.history_size:
            oldest_id, oldest = next(iter(self._pipelines.items()))
            if oldest.state == PipelineState.RUNNING:
                break
            self._pipelines.pop(oldest_id)

    async def _execute(self, result: PipelineResult, issue: Issue, context: FixContext) -> PipelineResult:
        log = logger.bind(pipeline_id=result.pipeline_id, issue_id=issue.id)
        log.info("pipeline_started", file=issue.file_path)
        await self._emit(PIPELINE_STARTED, result)
        try:
            await self._run(result, issue, context, log)
        except PipelineFailed as e:
            result.state = PipelineState.FAILED
            result.failed_stage = PipelineStage(e.stage)
            result.error = e.reason
            log.error("pipeline_failed", stage=e.stage, reason=e.reason)
        except asyncio.CancelledError:
            result.state = PipelineState.FAILED
            result.error = "cancelled"
            raise
        finally:
            for record in result.stages:
                if record.status == StageStatus.PENDING:
                    record.status = StageStatus.SKIPPED
            result.finished_at = _now()
            self._active_issues.discard(issue.id)

        if result.state == PipelineState.FAILED:
            await self._emit(PIPELINE_FAILED, result)
        else:
            await self._emit(PIPELINE_COMPLETED, result)
        log.info("pipeline_finished", state=result.state.value)
        return result

    async def _run(self, result: PipelineResult, issue: Issue, context: FixContext, log) -> None:
        reusable = issue.fix if issue.fix is not None and issue.fix.status == FixStatus.PROPOSED else None

        impact = await self._run_stage(
            result, PipelineStage.PREDICT_IMPACT, lambda: self.impact.predict(issue, reusable, context.root)
        )
        result.impact = impact
        if impact.risk_level == "high" and self.config.block_on_high_risk and not context.force:
            result.state = PipelineState.NEEDS_REVIEW
            result.error = f"impact risk {impact.risk_score:.2f} is high; apply with force after review"
            log.warning("pipeline_blocked_high_risk", risk=impact.risk_score)
            return

        fix = await self._run_stage(result, PipelineStage.GENERATE_FIX, lambda: self._generate(issue, reusable))
        result.fix = fix

        fix = await self._run_stage(result, PipelineStage.CALIBRATE_CONFIDENCE, lambda: self._calibrate(issue, fix))
        result.fix = fix
        result.calibrated_confidence = fix.calibrated_confidence

        applied = await self._run_stage(result, PipelineStage.APPLY, lambda: self._apply(issue, fix))
        fix = fix.model_copy(update={"status": FixStatus.APPLIED})
        result.fix = fix

        ctx = MonitorContext(issue=issue, fix=fix, applied=applied)
        window = self.monitor.config.window_seconds if context.monitoring_window is None else context.monitoring_window
        session = await self._run_stage(
            result,
            PipelineStage.MONITOR,
            lambda: self.monitor.watch(ctx, window),
            min_timeout=window + self.monitor.config.poll_interval,
        )
        result.monitoring = session

        await self._run_stage(
            result, PipelineStage.ROLLBACK_DECISION, lambda: self._decide(result, issue, fix, applied, session)
        )

    async def _run_stage(
        self, result: PipelineResult, stage: PipelineStage, fn: Callable[[], Awaitable[Any]], min_timeout: float = 0.0
    ) -> Any:
        record = result.stage(stage)
        timeout = max(min_timeout, self.config.stage_timeouts.get(stage.value, self.config.default_stage_timeout))
        record.status = StageStatus.RUNNING
        record.started_at = _now()

        error: Optional[BaseException] = None
        for attempt in range(1 + self.config.stage_retries):
            record.attempts = attempt + 1
            try:
                value = await asyncio.wait_for(fn(), timeout=timeout)
            except asyncio.TimeoutError:
                error = StageTimeout(stage.value, timeout)
            except TransientError as e:
                error = e
            except Exception as e:
                error = e
                break
            else:
                record.status = StageStatus.COMPLETED
                record.finished_at = _now()
                record.result = self._summarize(value)
                return value
            logger.warning("stage_attempt_failed", pipeline_id=result.pipeline_id, stage=stage.value, attempt=attempt + 1, error=str(error))

        record.status = StageStatus.FAILED
        record.finished_at = _now()
        record.error = f"{type(error).__name__}: {error}"
        raise PipelineFailed(result.pipeline_id, stage.value, str(error)) from error

    @staticmethod
    def _summarize(value: Any) -> Dict[str, Any]:
        if isinstance(value, ImpactReport):
            return {"risk_score": value.risk_score, "risk_level": value.risk_level}
        if isinstance(value, Fix):
            return {
                "fix_id": value.id,
                "method": value.method,
                "raw_confidence": value.raw_confidence,
                "calibrated_confidence": value.calibrated_confidence,
            }
        if isinstance(value, ApplyResult):
            return {"file_path": value.file_path, "backup_path": value.backup_path}
        if isinstance(value, MonitoringSession):
            return {"session_id": value.id, "polls": len(value.signals), "rollback": value.rollback_decision}
        if isinstance(value, PipelineState):
            return {"state": value.value}
        return {}

    # -- stages -----------------------------------------------------------

    async def _generate(self, issue: Issue, reusable: Optional[Fix]) -> Fix:
        if reusable is not None:
            logger.info("fix_reused", issue_id=issue.id, fix_id=reusable.id, method=reusable.method)
            return reusable
        if self.generator is None:
            raise GeneratorUnavailable(message="No fix generator is configured")

        loop = asyncio.get_running_loop()
        source_text = await loop.run_in_executor(None, read_lines, Path(issue.file_path), issue.line, issue.last_line)
        try:
            if self.generator_breaker is not None:
                generated = await self.generator_breaker.call(self.generator.generate, issue, source_text)
            else:
                generated = await self.generator.generate(issue, source_text)
        except GeneratorUnavailable:
            raise
        except DependencyOpen as e:
            raise GeneratorUnavailable(retry_after=e.retry_after) from e

        fix = Fix(
            issue_id=issue.id,
            code=generated.code,
            original_code=source_text,
            start_line=issue.line,
            end_line=issue.last_line,
            safety=generated.safety,
            raw_confidence=generated.raw_confidence,
            method=generated.method,
            explanation=generated.explanation,
        )
        return await self.issue_store.attach_fix(issue.id, fix)

    async def _calibrate(self, issue: Issue, fix: Fix) -> Fix:
        calibration = await self.calibrator.calibrate_detailed(
            fix.raw_confidence,
            CalibrationContext(method=fix.method, domain=issue.domain, file_path=issue.file_path, issue_type=issue.type.value),
        )
        fix = fix.model_copy(update={"calibrated_confidence": calibration.calibrated})
        fix.metadata["calibration"] = calibration.model_dump(mode="json")
        await self.issue_store.update_fix(fix)
        return fix

    async def _apply(self, issue: Issue, fix: Fix) -> ApplyResult:
        """Writes the fix and moves the issue to monitoring.

        Safe to retry: a write of this same fix already on disk is reused and
        transitions that already happened are skipped. Until the issue has
        left 'approved', any failure (a lost race, a store error, a timeout or
        cancellation) takes the write back out before propagating.
        """
        applied = await self.applier.apply(issue.file_path, fix)
        committed = False
        try:
            current = await self.issue_store.get_issue(issue.id)
            status = current.status if current is not None else ReviewStatus.APPROVED
            if status == ReviewStatus.APPROVED:
                await self.review.transition(issue.id, ReviewAction.APPLY, notes=f"fix {fix.id}", actor=PIPELINE_ACTOR)
                status = ReviewStatus.FIX_APPLIED
            elif status not in (ReviewStatus.FIX_APPLIED, ReviewStatus.MONITORING):
                raise InvalidTransition(status.value, ReviewAction.APPLY.value, issue.id)
            committed = True
        except BaseException:
            if not committed:
                await self.applier.revert(applied, fix)
            raise
        await self.issue_store.update_fix(fix.model_copy(update={"status": FixStatus.APPLIED}))
        if status == ReviewStatus.FIX_APPLIED:
            await self.review.transition(issue.id, ReviewAction.MONITOR, actor=PIPELINE_ACTOR)
        return applied

    async def _decide(
        self,
        result: PipelineResult,
        issue: Issue,
        fix: Fix,
        applied: ApplyResult,
        session: MonitoringSession,
    ) -> PipelineState:
        calibration_context = CalibrationContext(method=fix.method, domain=issue.domain, file_path=issue.file_path)
        if session.rollback_decision:
            await self.applier.revert(applied, fix)
            fix = fix.model_copy(update={"status": FixStatus.REVERTED, "active": False})
            await self.issue_store.update_fix(fix)
            await self.review.transition(
                issue.id, ReviewAction.ROLLBACK, notes="; ".join(session.reasons), actor=PIPELINE_ACTOR
            )
            session.end_state = SessionEndState.ROLLED_BACK
            session.ended_at = _now()
            await self.issue_store.update_resolution(
                issue.id,
                Resolution(outcome="rolled_back", pipeline_id=result.pipeline_id, fix_id=fix.id, notes="; ".join(session.reasons)),
            )
            result.fix = fix
            result.state = PipelineState.ROLLED_BACK
            await self._learn(issue, fix, calibration_context, success=False)
            if self.events is not None:
                await self.events.emit(
                    FIX_ROLLED_BACK,
                    {"issue_id": issue.id, "fix_id": fix.id, "strategy": session.strategy, "reasons": session.reasons},
                    source="pipeline",
                )
            return result.state

        await self.review.transition(issue.id, ReviewAction.RESOLVE, notes=session.end_state.value, actor=PIPELINE_ACTOR)
        fix = fix.model_copy(update={"status": FixStatus.RESOLVED})
        await self.issue_store.update_fix(fix)
        await self.issue_store.update_resolution(
            issue.id,
            Resolution(outcome="resolved", pipeline_id=result.pipeline_id, fix_id=fix.id, notes=session.end_state.value),
        )
        result.fix = fix
        result.state = PipelineState.RESOLVED
        await self._learn(issue, fix, calibration_context, success=True)
        return result.state

    async def _learn(self, issue: Issue, fix: Fix, context: CalibrationContext, success: bool) -> None:
        """Feeds the outcome to the calibrator and the knowledge store; failures here are logged only."""
        try:
            await self.calibrator.record_outcome(fix.id, fix.effective_confidence, success, context)
        except CodemendError as e:
            logger.warning("calibration_outcome_not_recorded", fix_id=fix.id, error=str(e))

        if self.knowledge is None:
            return
        try:
            entry_id = fix.knowledge_entry_id
            if entry_id is None and success:
                added = await self.knowledge.add_knowledge(self._fix_entry(issue, fix))
                entry_id = added.entry.id
            if entry_id is not None:
                await self.knowledge.record_usage(entry_id, success)
        except CodemendError as e:
            logger.warning("knowledge_outcome_not_recorded", fix_id=fix.id, error=str(e))

    @staticmethod
    def _fix_entry(issue: Issue, fix: Fix) -> KnowledgeEntry:
        return KnowledgeEntry(
            type=KnowledgeType.FIX,
            content=f"{issue.rule_id}: {issue.message}\n-{fix.original_code.strip()}\n+{fix.code.strip()}",
            source="pipeline",
            confidence=fix.effective_confidence,
            tags=[issue.rule_id, issue.type.value] + [t for t in issue.tags if t not in (issue.rule_id, issue.type.value)],
            metadata={
                "find": fix.original_code.strip(),
                "replace": fix.code.strip(),
                "safety": fix.safety.value,
                "rule_id": issue.rule_id,
                "method": fix.method,
            },
        )

    async def _emit(self, topic: str, result: PipelineResult) -> None:
        if self.events is None:
            return
        await self.events.emit(
            topic,
            {
                "pipeline_id": result.pipeline_id,
                "issue_id": result.issue_id,
                "state": result.state.value,
                "failed_stage": result.failed_stage.value if result.failed_stage else None,
                "error": result.error,
            },
            source="pipeline",
        )
