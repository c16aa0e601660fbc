from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import backoff
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Statuses worth another attempt; anything else (auth, bad request) fails at once.
RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504})


class LLMRequest(BaseModel):
    prompt: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LLMResponse(BaseModel):
    content: str
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


class BaseLLMClient(ABC):
    """A chat-completion provider. ``generate`` is blocking; callers move it off the event loop."""

    @abstractmethod
    def generate(self, request: LLMRequest) -> LLMResponse:
        pass


def call_with_retries(
    fn: Callable[[], T],
    retry_on: Tuple[Type[Exception], ...],
    max_tries: int,
    status_of: Callable[[Exception], Optional[int]] = lambda e: None,
) -> T:
    """Calls ``fn`` with exponential backoff, giving up early on non-retryable HTTP statuses."""

    def giveup(e: Exception) -> bool:
        status = status_of(e)
        return status is not None and status not in RETRYABLE_STATUS

    def on_backoff(details) -> None:
        logger.warning("llm_call_retry", tries=details["tries"], wait=round(details["wait"], 2))

    retrying = backoff.on_exception(
        backoff.expo,
        retry_on,
        max_tries=max(1, max_tries),
        giveup=giveup,
        on_backoff=on_backoff,
    )(fn)
    return retrying()


class DummyLLMClient(BaseLLMClient):
    """Offline client: answers with a fixed reply, or echoes the original code back."""

    def __init__(self, content: Optional[str] = None, confidence: float = 0.5):
        self.content = content
        self.confidence = confidence
        self.calls = 0

    def generate(self, request: LLMRequest) -> LLMResponse:
        self.calls += 1
        content = self.content
        if content is None:
            original = request.metadata.get("original_code", "")
            content = f"```\n{original}```\nCONFIDENCE: {self.confidence}"
        return LLMResponse(content=content, model="dummy")
