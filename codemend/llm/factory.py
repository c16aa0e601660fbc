from __future__ import annotations

from typing import Callable, Dict, Optional

from codemend.config.llm import LLMConfig
from codemend.core.errors import ConfigError
from codemend.llm.client import BaseLLMClient, DummyLLMClient
from codemend.llm.providers.anthropic import AnthropicClient
from codemend.llm.providers.openai import OpenAIClient

PROVIDERS: Dict[str, Callable[[LLMConfig], BaseLLMClient]] = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "dummy": lambda config: DummyLLMClient(confidence=config.default_confidence),
}


class LLMFactory:
    @staticmethod
    def create_client(config: LLMConfig) -> Optional[BaseLLMClient]:
        """Returns a client for the configured provider, or None when LLM generation is disabled."""
        if not config.enabled:
            return None
        try:
            build = PROVIDERS[config.provider]
        except KeyError:
            raise ConfigError(f"Unsupported LLM provider: {config.provider}")
        return build(config)
