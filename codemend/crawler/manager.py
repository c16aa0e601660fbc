"""Bounded fan-out of crawls over many targets.

At most ``concurrency`` crawlers run at once; further requests wait in a FIFO
queue and start as slots free. Submitting a target that is already queued or
running returns the existing handle. A crawler blowing up is recorded on its
own handle and never affects other targets.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from codemend.config.crawler import ParallelCrawlConfig
from codemend.crawler.crawler import CodebaseCrawler
from codemend.models.crawl import CrawlOptions, CrawlState, CrawlStats, CrawlSummary, ManagerStatus
from codemend.models.issue import new_id

logger = structlog.get_logger(__name__)

CrawlerFactory = Callable[[], CodebaseCrawler]


class CrawlHandle(BaseModel):
    crawl_id: str = Field(default_factory=lambda: new_id("crawl"))
    target: str
    state: CrawlState = CrawlState.QUEUED
    message: Optional[str] = None
    errors: int = 0
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    summary: Optional[CrawlSummary] = None

    @property
    def accepted(self) -> bool:
        return self.state != CrawlState.REJECTED

    @property
    def active(self) -> bool:
        return self.state in (CrawlState.QUEUED, CrawlState.RUNNING)


class _Job:
    def __init__(self, handle: CrawlHandle, options: CrawlOptions):
        self.handle = handle
        self.options = options
        self.crawler: Optional[CodebaseCrawler] = None
        self.done = asyncio.Event()


def normalize_target(target: str) -> str:
    return str(Path(target).expanduser().resolve())


class ParallelCrawlManager:
    def __init__(self, crawler_factory: CrawlerFactory, config: Optional[ParallelCrawlConfig] = None):
        self.crawler_factory = crawler_factory
        self.config = config or ParallelCrawlConfig.default()
        self.concurrency = self.config.concurrency

        self._queue: Deque[_Job] = deque()
        self._running: Dict[str, _Job] = {}
        self._by_target: Dict[str, _Job] = {}
        self._finished: "OrderedDict[str, CrawlHandle]" = OrderedDict()
        self._completed_count = 0
        self._tasks: Dict[str, asyncio.Task] = {}
        # peak of simultaneously running crawls since the manager was created
        self.max_observed_active = 0

    def start_parallel_crawls(
        self, targets: Sequence[str], options: Optional[CrawlOptions] = None
    ) -> List[CrawlHandle]:
        """Dispatches one crawl per target and returns a handle for each, in order.

        Must be called from a running event loop. Invalid targets come back
        as ``rejected`` handles and are never queued.
        """
        options = options or CrawlOptions()
        if options.concurrency:
            self.concurrency = options.concurrency

        handles = []
        for target in targets:
            handles.append(self._submit(target, options))
        self._pump()
        return handles

    def _submit(self, target: str, options: CrawlOptions) -> CrawlHandle:
        if not target or not Path(target).exists():
            logger.warning("crawl_target_rejected", target=target)
            return CrawlHandle(target=str(target), state=CrawlState.REJECTED, message=f"Target does not exist: {target}")

        key = normalize_target(target)
        existing = self._by_target.get(key)
        if existing is not None and existing.handle.active:
            logger.info("crawl_target_already_active", target=key, crawl_id=existing.handle.crawl_id)
            return existing.handle

        job = _Job(CrawlHandle(target=key), options)
        self._by_target[key] = job
        self._queue.append(job)
        logger.info("crawl_queued", target=key, crawl_id=job.handle.crawl_id, queued=len(self._queue))
        return job.handle

    def _pump(self) -> None:
        while self._queue and len(self._running) < self.concurrency:
            job = self._queue.popleft()
            self._running[job.handle.target] = job
            self.max_observed_active = max(self.max_observed_active, len(self._running))
            job.handle.state = CrawlState.RUNNING
            job.handle.started_at = datetime.now(timezone.utc)
            self._tasks[job.handle.crawl_id] = asyncio.create_task(self._run(job))

    async def _run(self, job: _Job) -> None:
        handle = job.handle
        try:
            job.crawler = self.crawler_factory()
            summary = await job.crawler.crawl(handle.target, job.options)
            handle.summary = summary
            handle.errors = summary.stats.errors
            handle.state = CrawlState.STOPPED if summary.stopped else CrawlState.COMPLETED
        except asyncio.CancelledError:
            handle.state = CrawlState.STOPPED
            raise
        except Exception as e:
            handle.errors += 1
            handle.state = CrawlState.FAILED
            handle.message = f"{type(e).__name__}: {e}"
            logger.error("crawl_failed", target=handle.target, crawl_id=handle.crawl_id, error=str(e))
        finally:
            handle.finished_at = datetime.now(timezone.utc)
            self._running.pop(handle.target, None)
            self._forget(job)
            self._tasks.pop(handle.crawl_id, None)
            self._completed_count += 1
            self._remember(handle)
            job.done.set()
            self._pump()

    def _forget(self, job: _Job) -> None:
        if self._by_target.get(job.handle.target) is job:
            del self._by_target[job.handle.target]

    def _remember(self, handle: CrawlHandle) -> None:
        self._finished[handle.crawl_id] = handle
        while len(self._finished) > self.config.history_size:
            self._finished.popitem(last=False)

    def get_status(self) -> ManagerStatus:
        return ManagerStatus(
            active=len(self._running),
            queued=len(self._queue),
            completed=self._completed_count,
            concurrency=self.concurrency,
        )

    def handles(self) -> List[CrawlHandle]:
        running = [job.handle for job in self._running.values()]
        queued = [job.handle for job in self._queue]
        return running + queued + list(self._finished.values())

    def active_handle(self, target: str) -> Optional[CrawlHandle]:
        """The queued or running handle for ``target``, if any."""
        job = self._by_target.get(normalize_target(target))
        if job is not None and job.handle.active:
            return job.handle
        return None

    def get_handle(self, crawl_id: str) -> Optional[CrawlHandle]:
        for handle in self.handles():
            if handle.crawl_id == crawl_id:
                return handle
        return None

    def aggregate_stats(self) -> CrawlStats:
        """Sums the live stats of running crawls and the final stats of finished ones."""
        total = CrawlStats()
        stats: List[CrawlStats] = [job.crawler.status().stats for job in self._running.values() if job.crawler]
        stats += [h.summary.stats for h in self._finished.values() if h.summary]
        for s in stats:
            total.files_scanned += s.files_scanned
            total.files_skipped += s.files_skipped
            total.files_with_issues += s.files_with_issues
            total.issues_found += s.issues_found
            total.issues_auto_fixed += s.issues_auto_fixed
            total.issues_auto_fix_dispatched += s.issues_auto_fix_dispatched
            total.issues_needing_review += s.issues_needing_review
            total.errors += s.errors
            total.knowledge_lookup_errors += s.knowledge_lookup_errors
        return total

    def stop_all(self) -> int:
        """Drops queued crawls and asks running ones to stop; returns how many were affected."""
        affected = 0
        while self._queue:
            job = self._queue.popleft()
            job.handle.state = CrawlState.STOPPED
            self._forget(job)
            job.handle.finished_at = datetime.now(timezone.utc)
            self._remember(job.handle)
            job.done.set()
            affected += 1
        for job in self._running.values():
            if job.crawler is not None:
                job.crawler.stop()
            affected += 1
        return affected

    async def wait(self, handle: CrawlHandle) -> CrawlHandle:
        job = self._by_target.get(handle.target)
        if job is not None and job.handle is handle:
            await job.done.wait()
        return handle

    async def wait_all(self) -> None:
        while self._running or self._queue:
            pending = [job.done.wait() for job in list(self._running.values()) + list(self._queue)]
            await asyncio.gather(*pending)

    async def close(self) -> None:
        self.stop_all()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
