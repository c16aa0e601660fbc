"""Service container.

Builds every long-lived component from one ``CodemendConfig`` and owns their
lifecycle. Both the HTTP server and the CLI go through ``Services``.
"""
from __future__ import annotations

from typing import Optional, Sequence

import structlog

from codemend.audit.logger import AuditLogger
from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.settings import CodemendConfig
from codemend.core.capabilities import AUDIT, FIX_GENERATOR, WEBHOOK, CapabilityRegistry
from codemend.core.errors import ValidationError
from codemend.core.events import EventBus
from codemend.crawler.crawler import CodebaseCrawler
from codemend.crawler.detectors import BaseDetector, default_detectors
from codemend.crawler.manager import ParallelCrawlManager
from codemend.integrations.webhook import WebhookClient
from codemend.knowledge.reinforcement import KnowledgeReinforcer
from codemend.knowledge.store import KnowledgeStore
from codemend.llm.factory import LLMFactory
from codemend.models.issue import Issue
from codemend.models.pipeline import PipelineState
from codemend.pipeline.applier import FixApplier
from codemend.pipeline.generator import FixGenerator, LLMFixGenerator
from codemend.pipeline.impact import ImpactPredictor
from codemend.pipeline.monitor import CommandSignalSource, DetectorSignalSource, FixMonitor, SignalSource
from codemend.pipeline.orchestrator import FixOrchestrator
from codemend.pipeline.sandbox import Sandbox
from codemend.resilience.circuit_breaker import BreakerRegistry
from codemend.review.service import ReviewService
from codemend.storage.guarded import BreakerIssueStore
from codemend.storage.interfaces import IssueStore, KnowledgeBackend, OutcomeHistory
from codemend.storage.memory import InMemoryIssueStore, InMemoryKnowledgeBackend, InMemoryOutcomeHistory
from codemend.storage.sql_store import build_sql_stores

logger = structlog.get_logger(__name__)

ISSUE_BREAKER = "issue_store"
KNOWLEDGE_BREAKER = "knowledge_store"
GENERATOR_BREAKER = "fix_generator"


class Services:
    def __init__(
        self,
        config: CodemendConfig,
        events: EventBus,
        breakers: BreakerRegistry,
        capabilities: CapabilityRegistry,
        issue_store: IssueStore,
        knowledge_backend: KnowledgeBackend,
        outcome_history: OutcomeHistory,
        knowledge: KnowledgeStore,
        calibrator: ConfidenceCalibrator,
        review: ReviewService,
        orchestrator: FixOrchestrator,
        detectors: Sequence[BaseDetector],
    ):
        self.config = config
        self.events = events
        self.breakers = breakers
        self.capabilities = capabilities
        self.issue_store = issue_store
        self.knowledge_backend = knowledge_backend
        self.outcome_history = outcome_history
        self.knowledge = knowledge
        self.calibrator = calibrator
        self.review = review
        self.orchestrator = orchestrator
        self.detectors = list(detectors)
        self.crawl_manager = ParallelCrawlManager(self.create_crawler, config.parallel)
        self._started = False

    @classmethod
    def build(
        cls,
        config: Optional[CodemendConfig] = None,
        *,
        issue_store: Optional[IssueStore] = None,
        knowledge_backend: Optional[KnowledgeBackend] = None,
        outcome_history: Optional[OutcomeHistory] = None,
        generator: Optional[FixGenerator] = None,
        signal_sources: Optional[Sequence[SignalSource]] = None,
        detectors: Optional[Sequence[BaseDetector]] = None,
    ) -> "Services":
        """Wires the application; any store or collaborator passed in replaces the configured one."""
        config = config or CodemendConfig.default()
        events = EventBus()
        breakers = BreakerRegistry(config.breakers)
        capabilities = CapabilityRegistry()

        if config.storage.backend == "sql":
            sql_issues, sql_knowledge, sql_outcomes = build_sql_stores(config.storage.url, echo=config.storage.echo)
            issue_store = issue_store or sql_issues
            knowledge_backend = knowledge_backend or sql_knowledge
            outcome_history = outcome_history or sql_outcomes
        elif config.storage.backend != "memory":
            raise ValidationError(f"Unknown storage backend '{config.storage.backend}'")
        issue_store = issue_store or InMemoryIssueStore()
        knowledge_backend = knowledge_backend or InMemoryKnowledgeBackend()
        outcome_history = outcome_history or InMemoryOutcomeHistory()
        issue_store = BreakerIssueStore(issue_store, breakers.get(ISSUE_BREAKER, exclude=(ValidationError,)))

        knowledge = KnowledgeStore(knowledge_backend, config.knowledge, breaker=breakers.get(KNOWLEDGE_BREAKER))
        calibrator = ConfidenceCalibrator(outcome_history, config.calibration)
        review = ReviewService(issue_store, events=events, knowledge=knowledge, config=config.review)

        if generator is None:
            client = LLMFactory.create_client(config.llm)
            generator = LLMFixGenerator(client, config.llm) if client is not None else None
        capabilities.register(FIX_GENERATOR, generator)

        detectors = list(detectors) if detectors is not None else default_detectors(config.crawler.max_line_length)
        monitoring = config.pipeline.monitoring
        sources = [DetectorSignalSource(detectors)]
        if monitoring.test_command:
            sources.append(CommandSignalSource(monitoring.test_command, Sandbox(timeout=monitoring.test_timeout)))
        sources.extend(signal_sources or [])

        orchestrator = FixOrchestrator(
            issue_store,
            review,
            calibrator,
            applier=FixApplier(config.pipeline.backup_dir, validate_syntax=config.pipeline.validate_syntax),
            monitor=FixMonitor(sources, monitoring),
            impact=ImpactPredictor(issue_store, extensions=tuple(config.crawler.extensions)),
            generator=capabilities.get(FIX_GENERATOR, FixGenerator),
            # Bad model output means the provider answered; it does not count against the breaker.
            generator_breaker=breakers.get(GENERATOR_BREAKER, exclude=(ValidationError,)),
            knowledge=knowledge,
            config=config.pipeline,
            events=events,
        )

        if config.audit.enabled:
            capabilities.register(AUDIT, AuditLogger(config.audit))
        if config.webhook.enabled:
            capabilities.register(WEBHOOK, WebhookClient(config.webhook))

        return cls(
            config=config,
            events=events,
            breakers=breakers,
            capabilities=capabilities,
            issue_store=issue_store,
            knowledge_backend=knowledge_backend,
            outcome_history=outcome_history,
            knowledge=knowledge,
            calibrator=calibrator,
            review=review,
            orchestrator=orchestrator,
            detectors=detectors,
        )

    def create_crawler(self) -> CodebaseCrawler:
        return CodebaseCrawler(
            self.issue_store,
            config=self.config.crawler,
            detectors=self.detectors,
            knowledge=self.knowledge,
            review=self.review,
            review_config=self.config.review,
            auto_fix_handler=self._auto_fix,
            events=self.events,
        )

    async def _auto_fix(self, issue: Issue) -> bool:
        result = await self.orchestrator.orchestrate_fix(issue.id)
        return result.state == PipelineState.RESOLVED

    async def start(self) -> None:
        if self._started:
            return
        await self.issue_store.init()
        await self.knowledge_backend.init()
        await self.outcome_history.init()

        KnowledgeReinforcer(self.knowledge).attach(self.events)
        audit = self.capabilities.get(AUDIT, AuditLogger)
        if audit is not None:
            audit.attach(self.events)
        webhook = self.capabilities.get(WEBHOOK, WebhookClient)
        if webhook is not None:
            webhook.attach(self.events)

        if self.config.knowledge.seed_file:
            counts = await self.knowledge.seed_from_file(self.config.knowledge.seed_file)
            logger.info("knowledge_seeded", path=self.config.knowledge.seed_file, **counts)

        self._started = True
        logger.info("services_started", capabilities=self.capabilities.available(), storage=self.config.storage.backend)

    async def close(self) -> None:
        if not self._started:
            return
        await self.crawl_manager.close()
        await self.orchestrator.close()
        await self.outcome_history.close()
        await self.knowledge_backend.close()
        await self.issue_store.close()
        self._started = False
        logger.info("services_closed")
