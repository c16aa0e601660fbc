import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from codemend.audit.logger import AuditLogger
from codemend.audit.models import AuditEvent
from codemend.config.audit import AuditConfig
from codemend.core.events import EventBus


def _event(n: int = 0) -> AuditEvent:
    return AuditEvent(
        timestamp=datetime.now(timezone.utc),
        event_type="cli.crawl",
        actor="cli",
        payload={"paths": ["src"], "n": n},
    )


def test_audit_event_jsonl_format(tmp_path: Path):
    logger = AuditLogger(AuditConfig(enabled=True, log_dir=str(tmp_path)))
    logger.log(_event())

    log_file = next(tmp_path.glob("*.log"))
    with log_file.open("r") as f:
        data = json.loads(f.readline())
    assert data["event_type"] == "cli.crawl"
    assert data["payload"]["paths"] == ["src"]


def test_new_file_started_when_size_limit_reached(tmp_path: Path):
    logger = AuditLogger(AuditConfig(enabled=True, log_dir=str(tmp_path), max_file_size_mb=0))
    for i in range(3):
        logger.log(_event(i))
    assert len(list(tmp_path.glob("audit_*.log"))) == 3


def test_disabled_logger_writes_nothing(tmp_path: Path):
    logger = AuditLogger(AuditConfig(enabled=False, log_dir=str(tmp_path / "audit")))
    logger.log(_event())
    assert not (tmp_path / "audit").exists()


def test_unwritable_directory_disables_logging(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    logger = AuditLogger(AuditConfig(enabled=True, log_dir=str(blocker / "audit")))
    logger.log(_event())
    assert logger.enabled is False


def test_bus_events_are_recorded(tmp_path: Path):
    bus = EventBus()
    logger = AuditLogger(AuditConfig(enabled=True, log_dir=str(tmp_path)))
    logger.attach(bus)

    asyncio.run(bus.emit("issue.transitioned", {"issue_id": "issue-1", "actor": "ana", "to_status": "approved"}))

    lines = logger.current_file.read_text().splitlines()
    record = json.loads(lines[0])
    assert record["event_type"] == "issue.transitioned"
    assert record["issue_id"] == "issue-1"
    assert record["actor"] == "ana"
