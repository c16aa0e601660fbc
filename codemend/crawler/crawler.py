"""Single-target codebase crawl.

One unreadable or undetectable file never aborts a crawl: the failure is
logged, counted in ``errors`` and the walk moves on. Status can be read at
any time; counters are updated as each file completes.
"""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog

from codemend.config.crawler import CrawlerConfig
from codemend.config.review import ReviewConfig
from codemend.core.errors import CodemendError, CrawlInProgress
from codemend.core.events import CRAWL_COMPLETED, ISSUE_DETECTED, EventBus
from codemend.crawler.detectors import BaseDetector, Finding, default_detectors
from codemend.crawler.files import compute_hash, resolve_targets
from codemend.knowledge.store import KnowledgeStore
from codemend.models.crawl import CrawlOptions, CrawlStats, CrawlStatus, CrawlSummary, FileError
from codemend.models.issue import Fix, Issue, new_id
from codemend.models.knowledge import KnowledgeFilters, KnowledgeType
from codemend.review.policies import SafeTierPolicy, issue_needs_review
from codemend.review.service import ReviewService
from codemend.storage.interfaces import IssueStore

logger = structlog.get_logger(__name__)

# Runs the fix pipeline for an auto-approved issue; True only when the fix ended resolved.
AutoFixHandler = Callable[[Issue], Awaitable[bool]]


class CodebaseCrawler:
    def __init__(
        self,
        issue_store: IssueStore,
        config: Optional[CrawlerConfig] = None,
        detectors: Optional[Sequence[BaseDetector]] = None,
        knowledge: Optional[KnowledgeStore] = None,
        review: Optional[ReviewService] = None,
        review_config: Optional[ReviewConfig] = None,
        auto_fix_handler: Optional[AutoFixHandler] = None,
        events: Optional[EventBus] = None,
    ):
        self.issue_store = issue_store
        self.config = config or CrawlerConfig.default()
        self.detectors = list(detectors) if detectors is not None else default_detectors(self.config.max_line_length)
        self.knowledge = knowledge
        self.review = review
        self.auto_policy = SafeTierPolicy((review_config or ReviewConfig.default()).auto_approve_min_confidence)
        self.auto_fix_handler = auto_fix_handler
        self.events = events

        self._stats = CrawlStats()
        self._running = False
        self._stop_event = asyncio.Event()
        self._hashes: Dict[str, str] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> CrawlStatus:
        return CrawlStatus(is_running=self._running, stats=self._stats.model_copy())

    def stop(self) -> None:
        """Stops scheduling new files; the file being processed finishes."""
        if self._running:
            logger.info("crawl_stop_requested")
            self._stop_event.set()

    async def crawl(
        self, target: Union[str, os.PathLike, Sequence[str]], options: Optional[CrawlOptions] = None
    ) -> CrawlSummary:
        if self._running:
            raise CrawlInProgress(str(target))
        options = options or CrawlOptions()
        extensions = options.extensions or self.config.extensions
        auto_fix = self.config.auto_fix if options.auto_fix is None else options.auto_fix
        skip_unchanged = self.config.skip_unchanged if options.skip_unchanged is None else options.skip_unchanged

        crawl_id = new_id("crawl")
        root = str(target) if isinstance(target, (str, os.PathLike)) else "<files>"
        self._running = True
        self._stop_event = asyncio.Event()
        self._stats = CrawlStats(started_at=datetime.now(timezone.utc))
        summary = CrawlSummary(crawl_id=crawl_id, root=root, stats=self._stats)
        log = logger.bind(crawl_id=crawl_id, root=root)
        log.info("crawl_started", auto_fix=auto_fix)

        try:
            loop = asyncio.get_running_loop()
            files = await loop.run_in_executor(
                None,
                resolve_targets,
                target,
                extensions,
                self.config.exclude_dirs,
                self.config.respect_gitignore,
            )
            if options.max_files:
                files = files[: options.max_files]

            for path in files:
                if self._stop_event.is_set():
                    summary.stopped = True
                    break
                await self._crawl_file(path, crawl_id, auto_fix, skip_unchanged, summary, log)
        finally:
            self._stats.finished_at = datetime.now(timezone.utc)
            self._running = False

        summary.stats = self._stats.model_copy()
        log.info(
            "crawl_finished",
            stopped=summary.stopped,
            files_scanned=self._stats.files_scanned,
            files_skipped=self._stats.files_skipped,
            issues_found=self._stats.issues_found,
            errors=self._stats.errors,
        )
        if self.events is not None:
            await self.events.emit(
                CRAWL_COMPLETED,
                {"crawl_id": crawl_id, "root": root, "stopped": summary.stopped, "stats": summary.stats.model_dump(mode="json")},
                source="crawler",
            )
        return summary

    def _read(self, path: Path) -> Optional[bytes]:
        if path.stat().st_size > self.config.max_file_size_kb * 1024:
            return None
        return path.read_bytes()

    def _detect(self, path: Path, text: str) -> List[Finding]:
        findings: List[Finding] = []
        for detector in self.detectors:
            if detector.applies_to(str(path)):
                findings.extend(detector.check(str(path), text))
        return findings

    async def _crawl_file(self, path: Path, crawl_id: str, auto_fix: bool, skip_unchanged: bool, summary, log) -> None:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._read, path)
            if data is None:
                self._stats.files_skipped += 1
                log.debug("file_skipped_too_large", file=str(path))
                return
            digest = compute_hash(data)
            if skip_unchanged and self._hashes.get(str(path)) == digest:
                self._stats.files_skipped += 1
                return
            text = data.decode("utf-8")
            findings = await loop.run_in_executor(None, self._detect, path, text)
        except Exception as e:
            self._stats.errors += 1
            summary.file_errors.append(FileError(file_path=str(path), error=f"{type(e).__name__}: {e}"))
            log.warning("file_crawl_failed", file=str(path), error=str(e))
            return

        self._hashes[str(path)] = digest
        self._stats.files_scanned += 1
        if findings:
            self._stats.files_with_issues += 1

        lines = text.splitlines(keepends=True)
        for finding in findings:
            try:
                issue = await self._emit_issue(path, lines, finding, crawl_id, auto_fix)
            except Exception as e:
                # Issue store or review failures for one finding stay local to it.
                self._stats.errors += 1
                log.warning("issue_emit_failed", file=str(path), rule=finding.rule_id, error=str(e))
                continue
            summary.issue_ids.append(issue.id)

    async def _emit_issue(self, path: Path, lines: List[str], finding: Finding, crawl_id: str, auto_fix: bool) -> Issue:
        line_text = lines[finding.line - 1] if finding.line <= len(lines) else ""
        issue = Issue(
            file_path=str(path),
            line=finding.line,
            column=finding.column,
            end_line=finding.end_line,
            type=finding.type,
            severity=finding.severity,
            message=finding.message,
            rule_id=finding.rule_id,
            tags=finding.tags,
            code_snippet=line_text.rstrip("\n"),
            crawl_id=crawl_id,
        )
        issue.fix = await self._suggest_fix(issue, line_text, finding)
        issue = await self.issue_store.add_issue(issue)
        self._stats.issues_found += 1

        if self.events is not None:
            await self.events.emit(
                ISSUE_DETECTED,
                {"issue_id": issue.id, "file_path": issue.file_path, "type": issue.type.value, "severity": issue.severity.value},
                source="crawler",
            )

        if self.review is None:
            self._stats.issues_needing_review += 1
            return issue
        await self.review.submit(issue.id)
        issue = await self.issue_store.get_issue(issue.id) or issue

        if auto_fix and not issue_needs_review(issue):
            decision, _ = await self.review.auto_approve(issue, self.auto_policy)
            if decision is not None and await self._run_auto_fix(issue):
                self._stats.issues_auto_fixed += 1
                return issue
        self._stats.issues_needing_review += 1
        return issue

    async def _run_auto_fix(self, issue: Issue) -> bool:
        if self.auto_fix_handler is None:
            # approved, but nothing will apply it
            return False
        self._stats.issues_auto_fix_dispatched += 1
        try:
            resolved = await self.auto_fix_handler(issue)
        except Exception as e:
            logger.warning("auto_fix_handler_failed", issue_id=issue.id, error=str(e))
            return False
        if not resolved:
            logger.info("auto_fix_not_resolved", issue_id=issue.id)
        return bool(resolved)

    async def _suggest_fix(self, issue: Issue, line_text: str, finding: Finding) -> Optional[Fix]:
        fix = await self._knowledge_fix(issue, line_text)
        if fix is not None:
            return fix
        suggestion = finding.suggestion
        if suggestion is None or suggestion.find not in line_text:
            return None
        return Fix(
            issue_id=issue.id,
            code=line_text.replace(suggestion.find, suggestion.replace, 1),
            original_code=line_text,
            start_line=issue.line,
            end_line=issue.line,
            safety=suggestion.safety,
            raw_confidence=suggestion.confidence,
            method="detector-suggestion",
            explanation=suggestion.explanation,
        )

    async def _knowledge_fix(self, issue: Issue, line_text: str) -> Optional[Fix]:
        """Reuses a stored fix whose ``find`` text occurs on the issue's line."""
        if self.knowledge is None:
            return None
        filters = KnowledgeFilters(
            type=KnowledgeType.FIX,
            tags=[issue.rule_id] + list(issue.tags),
            min_confidence=self.config.knowledge_hint_confidence,
            limit=5,
        )
        try:
            matches = await self.knowledge.search(issue.message, filters)
        except CodemendError as e:
            self._stats.knowledge_lookup_errors += 1
            logger.warning("knowledge_lookup_failed", issue_id=issue.id, error=str(e))
            return None

        for scored in matches:
            entry = scored.entry
            find = entry.metadata.get("find")
            replace = entry.metadata.get("replace")
            if not find or replace is None or find not in line_text:
                continue
            return Fix(
                issue_id=issue.id,
                code=line_text.replace(find, replace, 1),
                original_code=line_text,
                start_line=issue.line,
                end_line=issue.line,
                safety=entry.metadata.get("safety", "safe"),
                raw_confidence=entry.confidence,
                method="knowledge",
                explanation=entry.content,
                knowledge_entry_id=entry.id,
            )
        return None
