"""Baseline detectors.

A detector receives one file's path and decoded text and returns findings.
Detectors may raise; the crawler counts that as a failure of the file.
"""
from __future__ import annotations

import ast
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field

from codemend.models.issue import IssueType, SafetyTier, Severity

PYTHON_EXTENSIONS = (".py",)
JS_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")


class Suggestion(BaseModel):
    """Replace ``find`` with ``replace`` on the finding's line."""

    find: str
    replace: str
    safety: SafetyTier = SafetyTier.SAFE
    confidence: float = 0.9
    explanation: str = ""


class Finding(BaseModel):
    rule_id: str
    type: IssueType
    severity: Severity
    line: int = Field(1, ge=1)
    column: int = 0
    end_line: Optional[int] = None
    message: str
    tags: List[str] = Field(default_factory=list)
    suggestion: Optional[Suggestion] = None


class BaseDetector(ABC):
    detector_id: str
    description: str
    extensions: tuple = ()

    def applies_to(self, path: str) -> bool:
        return not self.extensions or path.endswith(self.extensions)

    @abstractmethod
    def check(self, path: str, text: str) -> List[Finding]:
        raise NotImplementedError


class BareExceptDetector(BaseDetector):
    detector_id = "PY_BARE_EXCEPT"
    description = "Flags `except:` clauses that swallow every exception, including KeyboardInterrupt."
    extensions = PYTHON_EXTENSIONS

    def check(self, path: str, text: str) -> List[Finding]:
        try:
            tree = ast.parse(text, filename=path)
        except SyntaxError:
            return []
        findings = []
        for node in ast.walk(tree):
            if isinstance(node, ast.ExceptHandler) and node.type is None:
                findings.append(Finding(
                    rule_id=self.detector_id,
                    type=IssueType.ERROR_HANDLING,
                    severity=Severity.MEDIUM,
                    line=node.lineno,
                    column=node.col_offset,
                    message="Bare 'except:' catches SystemExit and KeyboardInterrupt; catch Exception instead.",
                    tags=["error-handling", "bare-except", "python"],
                    suggestion=Suggestion(
                        find="except:",
                        replace="except Exception:",
                        explanation="Narrow the bare except to Exception.",
                    ),
                ))
        return findings


class DebugPrintDetector(BaseDetector):
    detector_id = "DEBUG_OUTPUT"
    description = "Flags leftover print() / console.log() debugging output."
    extensions = PYTHON_EXTENSIONS + JS_EXTENSIONS

    _PY = re.compile(r"^\s*print\(")
    _JS = re.compile(r"\bconsole\.log\(")

    def check(self, path: str, text: str) -> List[Finding]:
        is_python = path.endswith(PYTHON_EXTENSIONS)
        pattern = self._PY if is_python else self._JS
        findings = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            match = pattern.search(line)
            if not match:
                continue
            suggestion = None
            if not is_python:
                suggestion = Suggestion(
                    find="console.log(",
                    replace="console.debug(",
                    confidence=0.8,
                    explanation="Demote debug output to console.debug.",
                )
            findings.append(Finding(
                rule_id=self.detector_id,
                type=IssueType.BEST_PRACTICE,
                severity=Severity.LOW,
                line=lineno,
                column=match.start(),
                message="Debug output left in source.",
                tags=["debug-output", "python" if is_python else "javascript"],
                suggestion=suggestion,
            ))
        return findings


class TodoMarkerDetector(BaseDetector):
    detector_id = "TODO_MARKER"
    description = "Flags TODO/FIXME/XXX markers."

    _MARKER = re.compile(r"(#|//)\s*(TODO|FIXME|XXX)\b[:\s]*(.*)")

    def check(self, path: str, text: str) -> List[Finding]:
        findings = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            match = self._MARKER.search(line)
            if match:
                findings.append(Finding(
                    rule_id=self.detector_id,
                    type=IssueType.MAINTAINABILITY,
                    severity=Severity.LOW,
                    line=lineno,
                    column=match.start(),
                    message=f"{match.group(2)} marker: {match.group(3).strip() or '(no description)'}",
                    tags=["todo"],
                ))
        return findings


class LongLineDetector(BaseDetector):
    detector_id = "LONG_LINE"
    description = "Flags lines longer than the configured maximum."

    def __init__(self, max_length: int = 120):
        self.max_length = max_length

    def check(self, path: str, text: str) -> List[Finding]:
        return [
            Finding(
                rule_id=self.detector_id,
                type=IssueType.STYLE,
                severity=Severity.LOW,
                line=lineno,
                column=self.max_length,
                message=f"Line is {len(line)} characters long (max {self.max_length}).",
                tags=["style", "line-length"],
            )
            for lineno, line in enumerate(text.splitlines(), start=1)
            if len(line) > self.max_length
        ]


class HardcodedSecretDetector(BaseDetector):
    detector_id = "HARDCODED_SECRET"
    description = "Flags credentials assigned as string literals."

    _ASSIGNMENT = re.compile(
        r"""(?i)\b(password|passwd|secret|api_?key|access_?token|auth_?token)\b\s*[:=]\s*["']([^"'\s]{8,})["']"""
    )
    _AWS_KEY = re.compile(r"\bAKIA[0-9A-Z]{16}\b")

    def check(self, path: str, text: str) -> List[Finding]:
        findings = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            match = self._ASSIGNMENT.search(line) or self._AWS_KEY.search(line)
            if match:
                findings.append(Finding(
                    rule_id=self.detector_id,
                    type=IssueType.SECURITY,
                    severity=Severity.CRITICAL,
                    line=lineno,
                    column=match.start(),
                    message="Possible hardcoded credential; load it from the environment or a secret store.",
                    tags=["security", "secrets"],
                ))
        return findings


def default_detectors(max_line_length: int = 120) -> List[BaseDetector]:
    return [
        BareExceptDetector(),
        DebugPrintDetector(),
        TodoMarkerDetector(),
        LongLineDetector(max_line_length),
        HardcodedSecretDetector(),
    ]
