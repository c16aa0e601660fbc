"""Issue lifecycle.

    detected -> pending_review -> {approved, rejected, deferred}
    approved -> fix_applied -> monitoring -> {resolved, rolled_back}
    fix_applied -> rolled_back
    rejected | deferred -> (reopen) -> detected

The transition function is pure; persistence and the concurrency guard
live in ``ReviewService``.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from codemend.core.errors import InvalidTransition
from codemend.models.issue import ReviewAction, ReviewDecision, ReviewStatus

S = ReviewStatus
A = ReviewAction

TRANSITIONS: Dict[Tuple[ReviewStatus, ReviewAction], ReviewStatus] = {
    (S.DETECTED, A.SUBMIT): S.PENDING_REVIEW,
    (S.PENDING_REVIEW, A.APPROVE): S.APPROVED,
    (S.PENDING_REVIEW, A.REJECT): S.REJECTED,
    (S.PENDING_REVIEW, A.DEFER): S.DEFERRED,
    (S.APPROVED, A.APPLY): S.FIX_APPLIED,
    (S.FIX_APPLIED, A.MONITOR): S.MONITORING,
    (S.FIX_APPLIED, A.ROLLBACK): S.ROLLED_BACK,
    (S.MONITORING, A.RESOLVE): S.RESOLVED,
    (S.MONITORING, A.ROLLBACK): S.ROLLED_BACK,
    (S.REJECTED, A.REOPEN): S.DETECTED,
    (S.DEFERRED, A.REOPEN): S.DETECTED,
}

TERMINAL_STATES = frozenset({S.RESOLVED, S.ROLLED_BACK, S.REJECTED, S.DEFERRED})


def next_state(current: ReviewStatus, action: ReviewAction) -> ReviewStatus:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(current.value, action.value) from None


def allowed_actions(current: ReviewStatus) -> List[ReviewAction]:
    return [action for (state, action) in TRANSITIONS if state == current]


def transition(
    issue_id: str,
    current: ReviewStatus,
    action: ReviewAction,
    notes: str = "",
    actor: str = "system",
) -> Tuple[ReviewStatus, ReviewDecision]:
    """Returns the next state and the decision that records the move."""
    try:
        target = next_state(current, action)
    except InvalidTransition:
        raise InvalidTransition(current.value, action.value, issue_id) from None
    decision = ReviewDecision(
        issue_id=issue_id,
        action=action,
        from_status=current,
        to_status=target,
        notes=notes,
        actor=actor,
    )
    return target, decision


def is_valid_history(decisions: Sequence[ReviewDecision], initial: ReviewStatus = S.DETECTED) -> bool:
    """True when ``decisions`` chain into a walk of the transition graph from ``initial``."""
    current = initial
    for decision in decisions:
        if decision.from_status != current:
            return False
        if TRANSITIONS.get((current, decision.action)) != decision.to_status:
            return False
        current = decision.to_status
    return True


def statuses_visited(decisions: Iterable[ReviewDecision], initial: ReviewStatus = S.DETECTED) -> List[ReviewStatus]:
    visited = [initial]
    visited.extend(d.to_status for d in decisions)
    return visited
