"""Error taxonomy shared by every codemend component.

Validation errors are rejected synchronously and never retried. Transient
errors get one retry inside a pipeline stage. Systemic errors (an OPEN
breaker) short-circuit new work for a dependency until its cooldown ends.
"""
from __future__ import annotations

from typing import Optional


class CodemendError(Exception):
    """Base class for all codemend errors."""


class ConfigError(CodemendError):
    pass


class ValidationError(CodemendError):
    """Bad input to an API or service call."""


class IssueNotFound(CodemendError):
    def __init__(self, issue_id: str):
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


class InvalidTransition(CodemendError):
    """Raised when an action is not allowed from the issue's current state."""

    def __init__(self, current: str, action: str, issue_id: Optional[str] = None):
        where = f" for issue {issue_id}" if issue_id else ""
        super().__init__(f"Cannot '{action}' from state '{current}'{where}")
        self.current = current
        self.action = action
        self.issue_id = issue_id


class TransientError(CodemendError):
    """A failure that may succeed when retried (network, timeouts)."""


class StorageError(CodemendError):
    """A store backend failed in a way retrying will not fix."""


class StageTimeout(TransientError):
    def __init__(self, stage: str, timeout: float):
        super().__init__(f"Stage '{stage}' exceeded its timeout of {timeout}s")
        self.stage = stage
        self.timeout = timeout


class DependencyOpen(CodemendError):
    """The circuit breaker for a dependency is open; the call was not attempted."""

    def __init__(self, dependency: str, retry_after: float = 0.0, message: Optional[str] = None):
        super().__init__(message or f"Dependency '{dependency}' is unavailable (circuit open)")
        self.dependency = dependency
        self.retry_after = retry_after


class GeneratorUnavailable(DependencyOpen):
    """No fix generator is configured, or its breaker is open."""

    def __init__(self, retry_after: float = 0.0, message: Optional[str] = None):
        super().__init__("fix_generator", retry_after, message or "Fix generator is unavailable")


class FixConflict(CodemendError):
    """The region a fix targets no longer matches the file on disk."""


class RollbackFailed(CodemendError):
    pass


class PipelineFailed(CodemendError):
    def __init__(self, pipeline_id: str, stage: str, reason: str):
        super().__init__(f"Pipeline {pipeline_id} failed at stage '{stage}': {reason}")
        self.pipeline_id = pipeline_id
        self.stage = stage
        self.reason = reason


class EntryNotFound(CodemendError):
    def __init__(self, entry_id: str):
        super().__init__(f"Knowledge entry not found: {entry_id}")
        self.entry_id = entry_id


class CrawlInProgress(CodemendError):
    """A crawl for the same target is already running."""

    def __init__(self, target: str):
        super().__init__(f"A crawl is already running for {target}")
        self.target = target
