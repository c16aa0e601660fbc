"""Post-application monitoring and the rollback decision.

A monitoring session polls its signal sources until one of:
  * a poll crosses a regression threshold -> rollback,
  * ``stable_checks`` consecutive clean polls -> resolved,
  * the window elapses -> expired (the fix stays).
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict

from codemend.config.pipeline import MonitoringConfig, RegressionThresholds
from codemend.crawler.detectors import BaseDetector, default_detectors
from codemend.models.issue import Fix, Issue, Severity
from codemend.models.monitoring import MonitoringSession, MonitoringSignal, SessionEndState
from codemend.pipeline.applier import ApplyResult
from codemend.pipeline.sandbox import Sandbox

logger = structlog.get_logger(__name__)


class MonitorContext(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    issue: Issue
    fix: Fix
    applied: ApplyResult


class SignalSource(ABC):
    name: str = "source"

    @abstractmethod
    async def collect(self, session: MonitoringSession, ctx: MonitorContext) -> MonitoringSignal:
        ...

    def release(self, session_id: str) -> None:
        """Drops anything kept for a finished session."""


def _serious_findings(detectors: Sequence[BaseDetector], path: str, text: str) -> int:
    count = 0
    for detector in detectors:
        if detector.applies_to(path):
            count += sum(
                1 for f in detector.check(path, text)
                if f.severity in (Severity.CRITICAL, Severity.HIGH)
            )
    return count


class DetectorSignalSource(SignalSource):
    """Counts critical/high findings the fix introduced, and syntax breakage."""

    name = "detectors"

    def __init__(self, detectors: Optional[Sequence[BaseDetector]] = None):
        self.detectors = list(detectors) if detectors is not None else default_detectors()

    def _collect_sync(self, ctx: MonitorContext) -> MonitoringSignal:
        path = ctx.applied.file_path
        current = Path(path).read_text(encoding="utf-8")
        details = []
        new_errors = max(
            0,
            _serious_findings(self.detectors, path, current)
            - _serious_findings(self.detectors, path, ctx.applied.original_content),
        )
        if new_errors:
            details.append(f"{new_errors} new critical/high findings in {path}")
        if path.endswith(".py"):
            try:
                compile(current, path, "exec")
            except SyntaxError as e:
                new_errors += 1
                details.append(f"syntax error: {e}")
        return MonitoringSignal(source=self.name, new_errors=new_errors, details=details)

    async def collect(self, session: MonitoringSession, ctx: MonitorContext) -> MonitoringSignal:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._collect_sync, ctx)


class CommandSignalSource(SignalSource):
    """Runs a test command once per session; a non-zero exit is a test failure."""

    name = "command"

    def __init__(self, command: str, sandbox: Optional[Sandbox] = None, cwd: Optional[str] = None):
        self.command = command
        self.sandbox = sandbox or Sandbox()
        self.cwd = cwd
        self._results: Dict[str, MonitoringSignal] = {}

    async def collect(self, session: MonitoringSession, ctx: MonitorContext) -> MonitoringSignal:
        cached = self._results.get(session.id)
        if cached is not None:
            return cached
        command = self.command.replace("{file}", ctx.applied.file_path)
        ok, output = await self.sandbox.run_async(command, cwd=self.cwd)
        signal = MonitoringSignal(
            source=self.name,
            test_failures=0 if ok else 1,
            details=[] if ok else [output[-2000:]],
        )
        self._results[session.id] = signal
        return signal

    def release(self, session_id: str) -> None:
        self._results.pop(session_id, None)


class CallableSignalSource(SignalSource):
    """Wraps an injected ``async (session, ctx) -> MonitoringSignal`` callable."""

    def __init__(self, fn: Callable[[MonitoringSession, MonitorContext], Awaitable[MonitoringSignal]], name: str = "custom"):
        self.fn = fn
        self.name = name

    async def collect(self, session: MonitoringSession, ctx: MonitorContext) -> MonitoringSignal:
        return await self.fn(session, ctx)


def rollback_score(signal: MonitoringSignal) -> float:
    score = 0.0
    score += min(0.4, 0.1 * signal.new_errors)
    score += min(0.3, 0.15 * signal.test_failures)
    score += min(0.2, 0.1 * signal.performance_issues)
    score += min(0.3, 0.1 * signal.cascade_failures)
    return min(1.0, score)


def evaluate_signal(signal: MonitoringSignal, thresholds: RegressionThresholds) -> Tuple[bool, float, List[str]]:
    """Returns (regression, rollback score, reasons)."""
    reasons = []
    if signal.new_errors > thresholds.max_new_errors:
        reasons.append(f"{signal.new_errors} new errors (max {thresholds.max_new_errors})")
    if signal.test_failures > thresholds.max_test_failures:
        reasons.append(f"{signal.test_failures} test failures (max {thresholds.max_test_failures})")
    if signal.error_rate > thresholds.max_error_rate:
        reasons.append(f"error rate {signal.error_rate:.2%} (max {thresholds.max_error_rate:.2%})")
    score = rollback_score(signal)
    if score >= thresholds.rollback_score_threshold:
        reasons.append(f"rollback score {score:.2f} >= {thresholds.rollback_score_threshold:.2f}")
    return bool(reasons), score, reasons


def rollback_strategy(signal: MonitoringSignal) -> str:
    if signal.cascade_failures > 0:
        return "full"
    if signal.test_failures > 0:
        return "selective"
    return "partial"


class FixMonitor:
    def __init__(
        self,
        sources: Sequence[SignalSource],
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sources = list(sources)
        self.config = config or MonitoringConfig()
        self.clock = clock
        self.sleep = sleep

    async def _poll(self, session: MonitoringSession, ctx: MonitorContext) -> MonitoringSignal:
        combined = MonitoringSignal(source="poll")
        for source in self.sources:
            try:
                signal = await source.collect(session, ctx)
            except Exception as e:
                # A broken signal source is not evidence against the fix.
                logger.warning("signal_source_failed", source=source.name, session_id=session.id, error=str(e))
                continue
            combined = combined.merge(signal)
        return combined

    async def watch(self, ctx: MonitorContext, window_seconds: Optional[float] = None) -> MonitoringSession:
        """Observes the applied fix; sets ``rollback_decision`` and, unless rolling back, ``end_state``."""
        window = self.config.window_seconds if window_seconds is None else window_seconds
        session = MonitoringSession(
            fix_id=ctx.fix.id,
            issue_id=ctx.issue.id,
            file_path=ctx.applied.file_path,
            window_seconds=window,
        )
        log = logger.bind(session_id=session.id, fix_id=ctx.fix.id)
        log.info("monitoring_started", window=window)

        try:
            return await self._observe(session, ctx, window, log)
        finally:
            for source in self.sources:
                source.release(session.id)

    async def _observe(self, session: MonitoringSession, ctx: MonitorContext, window: float, log) -> MonitoringSession:
        started = self.clock()
        clean_streak = 0
        while True:
            signal = await self._poll(session, ctx)
            session.signals.append(signal)
            regression, score, reasons = evaluate_signal(signal, self.config.thresholds)
            session.rollback_score = max(session.rollback_score, score)

            if regression:
                session.rollback_decision = True
                session.reasons = reasons + signal.details
                session.strategy = rollback_strategy(signal)
                log.warning("regression_detected", reasons=reasons, score=score, strategy=session.strategy)
                return session

            clean_streak = clean_streak + 1 if signal.clean else 0
            if clean_streak >= self.config.stable_checks:
                return self._close(session, SessionEndState.RESOLVED, "signals stable", log)

            elapsed = self.clock() - started
            if elapsed >= window:
                return self._close(session, SessionEndState.EXPIRED, "monitoring window elapsed", log)
            await self.sleep(min(self.config.poll_interval, max(0.0, window - elapsed)))

    @staticmethod
    def _close(session: MonitoringSession, end_state: SessionEndState, reason: str, log) -> MonitoringSession:
        session.rollback_decision = False
        session.end_state = end_state
        session.ended_at = datetime.now(timezone.utc)
        session.reasons.append(reason)
        log.info("monitoring_closed", end_state=end_state.value, polls=len(session.signals))
        return session
