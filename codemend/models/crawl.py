from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class CrawlStats(BaseModel):
    files_scanned: int = 0
    files_skipped: int = 0
    files_with_issues: int = 0
    issues_found: int = 0
    issues_auto_fixed: int = 0
    issues_auto_fix_dispatched: int = 0
    issues_needing_review: int = 0
    errors: int = 0
    knowledge_lookup_errors: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class CrawlStatus(BaseModel):
    is_running: bool
    stats: CrawlStats


class FileError(BaseModel):
    file_path: str
    error: str


class CrawlSummary(BaseModel):
    crawl_id: str
    root: str
    stats: CrawlStats
    stopped: bool = False
    issue_ids: List[str] = Field(default_factory=list)
    file_errors: List[FileError] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.stopped


class CrawlState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    REJECTED = "rejected"


class ManagerStatus(BaseModel):
    active: int
    queued: int
    completed: int
    concurrency: int


class CrawlOptions(BaseModel):
    """Per-request overrides of ``CrawlerConfig``; ``None`` keeps the configured value."""

    extensions: Optional[List[str]] = None
    auto_fix: Optional[bool] = None
    skip_unchanged: Optional[bool] = None
    max_files: Optional[int] = Field(None, ge=1)
    concurrency: Optional[int] = Field(None, ge=1, description="Only read by the parallel crawl manager.")
