from __future__ import annotations

from anthropic import Anthropic, APIConnectionError, APIStatusError, RateLimitError

from codemend.config.llm import LLMConfig
from codemend.llm.client import BaseLLMClient, LLMRequest, LLMResponse, call_with_retries


class AnthropicClient(BaseLLMClient):
    def __init__(self, config: LLMConfig):
        self.config = config
        self.client = Anthropic(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    def generate(self, request: LLMRequest) -> LLMResponse:
        params = dict(
            model=request.model or self.config.model,
            messages=[{"role": "user", "content": request.prompt}],
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        if request.system_prompt:
            params["system"] = request.system_prompt

        response = call_with_retries(
            lambda: self.client.messages.create(**params),
            (RateLimitError, APIConnectionError, APIStatusError),
            self.config.retries,
            status_of=lambda e: e.status_code if isinstance(e, APIStatusError) else None,
        )
        return LLMResponse(
            content="".join(block.text for block in response.content if block.type == "text"),
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
