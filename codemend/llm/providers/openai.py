from __future__ import annotations

from openai import APIConnectionError, APIStatusError, OpenAI, RateLimitError

from codemend.config.llm import LLMConfig
from codemend.llm.client import BaseLLMClient, LLMRequest, LLMResponse, call_with_retries


class OpenAIClient(BaseLLMClient):
    def __init__(self, config: LLMConfig):
        self.config = config
        # retries are ours, not the SDK's
        self.client = OpenAI(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    def generate(self, request: LLMRequest) -> LLMResponse:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        def create():
            return self.client.chat.completions.create(
                model=request.model or self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )

        response = call_with_retries(
            create,
            (RateLimitError, APIConnectionError, APIStatusError),
            self.config.retries,
            status_of=lambda e: e.status_code if isinstance(e, APIStatusError) else None,
        )
        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
