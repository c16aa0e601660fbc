from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from codemend.config.audit import AuditConfig, WebhookConfig
from codemend.config.breaker import BreakerConfig
from codemend.config.calibration import CalibrationConfig
from codemend.config.crawler import CrawlerConfig, ParallelCrawlConfig
from codemend.config.knowledge import KnowledgeConfig
from codemend.config.llm import LLMConfig
from codemend.config.pipeline import PipelineConfig
from codemend.config.review import ReviewConfig
from codemend.config.storage import StorageConfig
from codemend.config.web import WebConfig
from codemend.core.errors import ConfigError


class CodemendConfig(BaseModel):
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    parallel: ParallelCrawlConfig = Field(default_factory=ParallelCrawlConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    breakers: Dict[str, BreakerConfig] = Field(default_factory=lambda: {"default": BreakerConfig()})
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    @classmethod
    def default(cls) -> "CodemendConfig":
        return cls()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CodemendConfig":
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def breaker(self, name: str) -> BreakerConfig:
        """Settings for the breaker guarding ``name``, falling back to ``default``."""
        return self.breakers.get(name) or self.breakers.get("default") or BreakerConfig()
