"""Fix generators.

A generator proposes replacement text for an issue's line range. The
pipeline treats it as an opaque dependency: it is called through the
``fix_generator`` circuit breaker and its raw confidence is calibrated
before the fix is applied.
"""
from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from codemend.config.llm import LLMConfig
from codemend.core.errors import TransientError, ValidationError
from codemend.llm.client import BaseLLMClient, LLMRequest
from codemend.models.issue import Issue, SafetyTier

logger = structlog.get_logger(__name__)

_CONFIDENCE_RE = re.compile(r"^\s*CONFIDENCE:\s*([01](?:\.\d+)?)\s*$", re.MULTILINE | re.IGNORECASE)
_SAFETY_RE = re.compile(r"^\s*SAFETY:\s*(safe|medium|risky)\s*$", re.MULTILINE | re.IGNORECASE)

SYSTEM_PROMPT = (
    "You fix one defect at a time. Reply with the corrected lines in a single fenced code block, "
    "then a line 'CONFIDENCE: <0..1>' and a line 'SAFETY: safe|medium|risky'."
)


class GeneratedFix(BaseModel):
    code: str
    raw_confidence: float = Field(0.5, ge=0.0, le=1.0)
    safety: SafetyTier = SafetyTier.MEDIUM
    method: str
    explanation: str = ""


class FixGenerator(ABC):
    method: str = "generator"

    @abstractmethod
    async def generate(self, issue: Issue, source_text: str) -> GeneratedFix:
        """Proposes a replacement for ``source_text``, the issue's lines."""


def extract_code_block(response: str, language: str = "") -> Optional[str]:
    """
    Extracts the content of the first markdown code block.
    Prioritizes blocks marked with the specific language.
    """
    if language:
        match = re.search(rf"```{language}\s*\n(.*?)\n?```", response, re.DOTALL)
        if match:
            return match.group(1)
    match = re.search(r"```(?:\w+)?\s*\n(.*?)\n?```", response, re.DOTALL)
    if match:
        return match.group(1)
    return None


def language_for(path: str) -> str:
    if path.endswith(".py"):
        return "python"
    if path.endswith((".ts", ".tsx")):
        return "typescript"
    if path.endswith((".js", ".jsx", ".mjs", ".cjs")):
        return "javascript"
    return ""


def match_line_endings(code: str, original: str) -> str:
    if original.endswith("\n") and not code.endswith("\n"):
        return code + "\n"
    return code


class LLMFixGenerator(FixGenerator):
    method = "llm"

    def __init__(self, client: BaseLLMClient, config: Optional[LLMConfig] = None):
        self.client = client
        self.config = config or LLMConfig.default()

    def build_request(self, issue: Issue, source_text: str) -> LLMRequest:
        prompt = (
            f"Fix the following issue in {issue.file_path} (line {issue.line}):\n"
            f"Issue: {issue.rule_id} - {issue.message}\n"
            f"Type: {issue.type.value}, severity: {issue.severity.value}\n\n"
            f"Lines to replace:\n```{language_for(issue.file_path)}\n{source_text}```\n"
        )
        return LLMRequest(
            prompt=prompt,
            system_prompt=self.config.system_prompt or SYSTEM_PROMPT,
            model=self.config.model,
            metadata={"issue_id": issue.id, "file_path": issue.file_path, "original_code": source_text},
        )

    async def generate(self, issue: Issue, source_text: str) -> GeneratedFix:
        request = self.build_request(issue, source_text)
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, self.client.generate, request)
        except Exception as e:
            # provider errors already went through backoff inside the client
            raise TransientError(f"LLM generation failed: {e}") from e

        code = extract_code_block(response.content, language_for(issue.file_path))
        if code is None:
            raise ValidationError("LLM response did not contain a code block")

        confidence = self.config.default_confidence
        match = _CONFIDENCE_RE.search(response.content)
        if match:
            confidence = min(1.0, max(0.0, float(match.group(1))))
        safety = SafetyTier.MEDIUM
        match = _SAFETY_RE.search(response.content)
        if match:
            safety = SafetyTier(match.group(1).lower())

        explanation = _CONFIDENCE_RE.sub("", _SAFETY_RE.sub("", response.content.split("```")[-1])).strip()
        logger.info(
            "fix_generated",
            issue_id=issue.id,
            model=response.model,
            confidence=confidence,
            safety=safety.value,
            tokens=response.input_tokens + response.output_tokens,
        )
        return GeneratedFix(
            code=match_line_endings(code, source_text),
            raw_confidence=confidence,
            safety=safety,
            method=self.method,
            explanation=explanation,
        )
