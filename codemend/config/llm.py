from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    enabled: bool = Field(True, description="Register an LLM-backed fix generator.")
    provider: Literal["dummy", "openai", "anthropic"] = Field("dummy", description="Chat-completion provider.")
    model: str = Field("dummy-model", description="Provider model name.")
    api_key: Optional[str] = Field(None, description="Provider API key; the SDK's environment variable is used when unset.")
    temperature: float = Field(0.0, ge=0.0, le=2.0)
    timeout: int = Field(60, ge=1, description="Timeout in seconds for one provider call.")
    retries: int = Field(3, ge=1, description="Attempts per provider call, including the first.")
    system_prompt: Optional[str] = Field(None, description="Replaces the built-in fix-generation prompt.")
    max_tokens: int = Field(2048, ge=1)
    default_confidence: float = Field(
        0.6, ge=0.0, le=1.0, description="Raw confidence used when the model does not state one."
    )

    @classmethod
    def default(cls) -> "LLMConfig":
        return cls()
