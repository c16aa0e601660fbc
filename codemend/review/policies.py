"""Auto-approval policies for batch review.

Two policies exist and neither is the default: callers pick one per batch.
Every decision a policy makes is recorded with ``actor="policy"``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Tuple

from codemend.models.issue import Fix, Issue, SafetyTier, Severity

POLICY_ACTOR = "policy"


def issue_needs_review(issue: Issue, fix: Fix = None) -> bool:
    """Critical and high severity issues, and medium or risky fixes, always go to a human."""
    fix = fix if fix is not None else issue.fix
    if issue.severity in (Severity.CRITICAL, Severity.HIGH):
        return True
    if fix is None:
        return True
    return fix.safety in (SafetyTier.MEDIUM, SafetyTier.RISKY)


class AutoApprovalPolicy(ABC):
    name: str = "policy"

    @abstractmethod
    def evaluate(self, issue: Issue) -> Tuple[bool, str]:
        """Returns (approve, reason)."""


class SafeTierPolicy(AutoApprovalPolicy):
    """Approves issues whose fix is ``safe`` and confident enough."""

    name = "safe-tier"

    def __init__(self, min_confidence: float = 0.85):
        self.min_confidence = min_confidence

    def evaluate(self, issue: Issue) -> Tuple[bool, str]:
        fix = issue.fix
        if fix is None:
            return False, "no fix attached"
        if fix.safety != SafetyTier.SAFE:
            return False, f"fix safety is {fix.safety.value}"
        confidence = fix.effective_confidence
        if confidence < self.min_confidence:
            return False, f"confidence {confidence:.2f} below {self.min_confidence:.2f}"
        return True, f"safe fix with confidence {confidence:.2f}"


class ApproveAllPolicy(AutoApprovalPolicy):
    """Approves every issue that has a fix attached, regardless of tier."""

    name = "approve-all"

    def evaluate(self, issue: Issue) -> Tuple[bool, str]:
        if issue.fix is None:
            return False, "no fix attached"
        return True, "batch approve-all"
