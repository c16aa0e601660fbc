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

DEFAULT_CONFIG = {
    "crawler": CrawlerConfig.default().model_dump(),
    "parallel": ParallelCrawlConfig.default().model_dump(),
    "review": ReviewConfig.default().model_dump(),
    "calibration": CalibrationConfig.default().model_dump(),
    "knowledge": KnowledgeConfig.default().model_dump(),
    "breakers": {
        "default": BreakerConfig.default().model_dump(),
        "fix_generator": BreakerConfig(failure_threshold=5, reset_timeout=30.0, call_timeout=120.0).model_dump(),
    },
    "pipeline": PipelineConfig.default().model_dump(),
    "storage": StorageConfig.default().model_dump(),
    "llm": LLMConfig.default().model_dump(),
    "web": WebConfig.default().model_dump(),
    "audit": AuditConfig().model_dump(),
    "webhook": WebhookConfig().model_dump(),
}
