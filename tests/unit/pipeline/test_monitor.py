import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from codemend.config.pipeline import MonitoringConfig
from codemend.models.issue import Fix, Issue, IssueType, Severity
from codemend.models.monitoring import MonitoringSignal, SessionEndState
from codemend.pipeline.applier import ApplyResult
from codemend.pipeline.monitor import (
    CallableSignalSource,
    CommandSignalSource,
    DetectorSignalSource,
    FixMonitor,
    MonitorContext,
    rollback_score,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


def _ctx(path: Path, original: str = "x = 1\n") -> MonitorContext:
    issue = Issue(file_path=str(path), line=1, type=IssueType.BUG, severity=Severity.LOW, message="m")
    fix = Fix(issue_id=issue.id, code="x = 2\n", original_code="x = 1\n", start_line=1, end_line=1)
    applied = ApplyResult(
        fix_id=fix.id, file_path=str(path), backup_path=str(path) + ".bak",
        original_content=original, new_content=path.read_text(), start_line=1, end_line=1,
    )
    return MonitorContext(issue=issue, fix=fix, applied=applied)


def _steady(signal: MonitoringSignal):
    async def collect(session, ctx):
        return signal.model_copy()
    return CallableSignalSource(collect, name="steady")


def _monitor(sources, clock, **config):
    return FixMonitor(sources, MonitoringConfig(**config), clock=clock, sleep=clock.sleep)


def test_stable_signals_resolve_early(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")
    clock = FakeClock()
    monitor = _monitor([_steady(MonitoringSignal())], clock, window_seconds=60, poll_interval=5, stable_checks=2)

    session = asyncio.run(monitor.watch(_ctx(path)))

    assert session.rollback_decision is False
    assert session.end_state == SessionEndState.RESOLVED
    assert len(session.signals) == 2
    assert clock.now == 5


def test_noisy_but_tolerable_signals_expire_with_window(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")
    clock = FakeClock()
    monitor = _monitor([_steady(MonitoringSignal(performance_issues=1))], clock, window_seconds=10, poll_interval=5)

    session = asyncio.run(monitor.watch(_ctx(path)))

    assert session.end_state == SessionEndState.EXPIRED
    assert session.rollback_decision is False
    assert len(session.signals) == 3


def test_regression_requests_rollback_with_strategy(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")
    clock = FakeClock()
    failing = MonitoringSignal(test_failures=1, details=["test_m failed"])
    monitor = _monitor([_steady(failing)], clock)

    session = asyncio.run(monitor.watch(_ctx(path)))

    assert session.rollback_decision is True
    assert session.end_state is None
    assert session.strategy == "selective"
    assert "test_m failed" in session.reasons


def test_broken_source_is_not_evidence_against_fix(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")

    async def explode(session, ctx):
        raise RuntimeError("source crashed")

    clock = FakeClock()
    monitor = _monitor([CallableSignalSource(explode)], clock, stable_checks=1)
    session = asyncio.run(monitor.watch(_ctx(path)))
    assert session.end_state == SessionEndState.RESOLVED


def test_detector_source_flags_syntax_errors_and_new_secrets(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text('password = "hunter2hunter2"\nif x\n')
    signal = asyncio.run(DetectorSignalSource().collect(None, _ctx(path)))
    assert signal.new_errors == 2
    assert len(signal.details) == 2


def test_command_source_runs_once_per_session(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")
    sandbox = MagicMock()
    sandbox.run_async = AsyncMock(return_value=(False, "1 failed"))
    source = CommandSignalSource("pytest {file}", sandbox=sandbox)
    clock = FakeClock()
    monitor = _monitor([source], clock)

    session = asyncio.run(monitor.watch(_ctx(path)))

    assert session.rollback_decision is True
    sandbox.run_async.assert_awaited_once_with(f"pytest {path}", cwd=None)


def test_rollback_score_weights_are_capped():
    assert rollback_score(MonitoringSignal(new_errors=10, test_failures=10, performance_issues=10, cascade_failures=10)) == 1.0
    assert rollback_score(MonitoringSignal()) == 0.0


def test_command_result_is_reused_within_a_session_and_dropped_after(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("x = 2\n")
    sandbox = MagicMock()
    sandbox.run_async = AsyncMock(return_value=(True, "3 passed"))
    source = CommandSignalSource("pytest {file}", sandbox=sandbox)
    clock = FakeClock()
    monitor = _monitor([source], clock, window_seconds=60, poll_interval=5, stable_checks=3)

    first = asyncio.run(monitor.watch(_ctx(path)))
    second = asyncio.run(monitor.watch(_ctx(path)))

    assert first.end_state == SessionEndState.RESOLVED
    assert len(first.signals) == 3
    assert second.end_state == SessionEndState.RESOLVED
    assert sandbox.run_async.await_count == 2
    assert source._results == {}
