from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from codemend.config.audit import AuditConfig
from codemend.core.events import WILDCARD, Event, EventBus
from .models import AuditEvent

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Appends audit events as JSON lines, starting a new file once the size limit is reached."""

    def __init__(self, config: AuditConfig) -> None:
        self._config = config
        self._current_file: Optional[Path] = None
        self._current_size: int = 0
        self._log_dir: Optional[Path] = None
        self._sequence = 0

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def current_file(self) -> Optional[Path]:
        return self._current_file

    def attach(self, events: EventBus) -> None:
        events.subscribe(WILDCARD, self.handle)

    async def handle(self, event: Event) -> None:
        payload = dict(event.payload)
        self.log(
            AuditEvent(
                timestamp=event.timestamp,
                event_type=event.topic,
                source=event.source,
                issue_id=payload.get("issue_id"),
                actor=payload.get("actor"),
                payload=payload,
            )
        )

    def log(self, event: AuditEvent) -> None:
        if not self._config.enabled:
            return

        line_bytes = (event.model_dump_json() + "\n").encode("utf-8")
        try:
            limit = self._config.max_file_size_mb * 1024 * 1024
            if self._current_file is None or (self._current_size + len(line_bytes)) > limit:
                self._open_new_file()

            with self._current_file.open("ab") as f:
                f.write(line_bytes)
            self._current_size += len(line_bytes)
        except OSError as e:
            # Audit output must never take the pipeline down with it.
            logger.error("audit_log_disabled", log_dir=self._config.log_dir, error=str(e))
            self._config.enabled = False
            self._current_file = None

    def _open_new_file(self) -> None:
        if self._log_dir is None:
            self._log_dir = Path(self._config.log_dir)
            self._log_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        self._sequence += 1
        self._current_file = self._log_dir / f"audit_{ts}_{self._sequence:03d}.log"
        self._current_file.touch()
        self._current_size = 0
