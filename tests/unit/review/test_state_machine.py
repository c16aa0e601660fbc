import pytest

from codemend.core.errors import InvalidTransition
from codemend.models.issue import ReviewAction, ReviewStatus
from codemend.review.state_machine import (
    TERMINAL_STATES,
    TRANSITIONS,
    allowed_actions,
    is_valid_history,
    next_state,
    statuses_visited,
    transition,
)

S = ReviewStatus
A = ReviewAction


def _walk(*actions):
    current = S.DETECTED
    decisions = []
    for action in actions:
        current, decision = transition("issue-1", current, action)
        decisions.append(decision)
    return current, decisions


def test_happy_path_reaches_resolved():
    final, decisions = _walk(A.SUBMIT, A.APPROVE, A.APPLY, A.MONITOR, A.RESOLVE)
    assert final == S.RESOLVED
    assert is_valid_history(decisions)
    visited = statuses_visited(decisions)
    assert visited.index(S.APPROVED) < visited.index(S.FIX_APPLIED) < visited.index(S.RESOLVED)


def test_rollback_from_monitoring_and_fix_applied():
    assert _walk(A.SUBMIT, A.APPROVE, A.APPLY, A.MONITOR, A.ROLLBACK)[0] == S.ROLLED_BACK
    assert _walk(A.SUBMIT, A.APPROVE, A.APPLY, A.ROLLBACK)[0] == S.ROLLED_BACK


def test_reopen_only_from_rejected_or_deferred():
    assert _walk(A.SUBMIT, A.REJECT, A.REOPEN)[0] == S.DETECTED
    assert _walk(A.SUBMIT, A.DEFER, A.REOPEN)[0] == S.DETECTED
    with pytest.raises(InvalidTransition):
        _walk(A.SUBMIT, A.APPROVE, A.APPLY, A.ROLLBACK, A.REOPEN)


@pytest.mark.parametrize(
    "current,action",
    [
        (S.DETECTED, A.APPROVE),
        (S.PENDING_REVIEW, A.APPLY),
        (S.APPROVED, A.RESOLVE),
        (S.RESOLVED, A.ROLLBACK),
        (S.FIX_APPLIED, A.RESOLVE),
    ],
)
def test_invalid_transitions_are_rejected(current, action):
    with pytest.raises(InvalidTransition) as excinfo:
        transition("issue-9", current, action)
    assert excinfo.value.issue_id == "issue-9"


def test_resolved_is_unreachable_without_approval_and_application():
    # every edge into resolved starts at monitoring, which is only reachable from fix_applied <- approved
    sources = {state for (state, _), target in TRANSITIONS.items() if target == S.RESOLVED}
    assert sources == {S.MONITORING}
    assert {s for (s, _), t in TRANSITIONS.items() if t == S.MONITORING} == {S.FIX_APPLIED}
    assert {s for (s, _), t in TRANSITIONS.items() if t == S.FIX_APPLIED} == {S.APPROVED}


def test_history_validation_detects_gaps():
    _, decisions = _walk(A.SUBMIT, A.APPROVE, A.APPLY)
    assert not is_valid_history([decisions[0], decisions[2]])


def test_allowed_actions_and_terminal_states():
    assert set(allowed_actions(S.PENDING_REVIEW)) == {A.APPROVE, A.REJECT, A.DEFER}
    assert allowed_actions(S.RESOLVED) == []
    assert S.RESOLVED in TERMINAL_STATES
    assert next_state(S.APPROVED, A.APPLY) == S.FIX_APPLIED
