"""
Tests for the testing request state machine declared in
stock_kernel/domain/testing_lifecycle.py.
"""

import pytest

from stock_kernel.domain import testing_lifecycle
from stock_kernel.domain.testing_lifecycle import TESTING_REQUEST_WORKFLOW, required_status
from stock_kernel.domain.values import RequestStatus, TestResult, combine_results
from stock_kernel.domain.workflow import Transition, Workflow


def _next_states(status):
    return {
        t.to_state
        for t in TESTING_REQUEST_WORKFLOW.transitions
        if t.from_state == status.value and t.to_state != t.from_state
    }


class TestTransitions:
    def test_initial_state_is_pending(self):
        assert TESTING_REQUEST_WORKFLOW.initial_state == RequestStatus.PENDING_TESTING.value

    @pytest.mark.parametrize(
        "current, target",
        [
            (RequestStatus.PENDING_TESTING, RequestStatus.UNDER_TESTING),
            (RequestStatus.PENDING_TESTING, RequestStatus.CANCELLED),
            (RequestStatus.UNDER_TESTING, RequestStatus.COMPLETED),
        ],
    )
    def test_allowed(self, current, target):
        assert target.value in _next_states(current)

    @pytest.mark.parametrize(
        "current, target",
        [
            (RequestStatus.UNDER_TESTING, RequestStatus.CANCELLED),
            (RequestStatus.UNDER_TESTING, RequestStatus.PENDING_TESTING),
            (RequestStatus.PENDING_TESTING, RequestStatus.COMPLETED),
            (RequestStatus.COMPLETED, RequestStatus.UNDER_TESTING),
            (RequestStatus.CANCELLED, RequestStatus.PENDING_TESTING),
        ],
    )
    def test_rejected(self, current, target):
        assert target.value not in _next_states(current)

    def test_terminal_states_have_no_exits(self):
        assert _next_states(RequestStatus.COMPLETED) == set()
        assert _next_states(RequestStatus.CANCELLED) == set()

    @pytest.mark.parametrize(
        "action, status",
        [
            (testing_lifecycle.ACCEPT, RequestStatus.PENDING_TESTING),
            (testing_lifecycle.CANCEL, RequestStatus.PENDING_TESTING),
            (testing_lifecycle.RECORD_RESULT, RequestStatus.UNDER_TESTING),
            (testing_lifecycle.COMPLETE, RequestStatus.UNDER_TESTING),
        ],
    )
    def test_required_status(self, action, status):
        assert required_status(action) is status

    def test_unknown_action_has_no_source(self):
        with pytest.raises(ValueError):
            required_status("approve")

    def test_record_result_keeps_status(self):
        t = TESTING_REQUEST_WORKFLOW.find_transition(
            RequestStatus.UNDER_TESTING.value, testing_lifecycle.RECORD_RESULT
        )
        assert t is not None
        assert t.to_state == t.from_state

    def test_every_transition_is_guarded(self):
        guards = [t.guard.name for t in TESTING_REQUEST_WORKFLOW.transitions]
        assert len(set(guards)) == len(TESTING_REQUEST_WORKFLOW.transitions)


class TestWorkflowValidation:
    def test_undeclared_state_rejected(self):
        with pytest.raises(ValueError, match="undeclared"):
            Workflow(
                name="w",
                description="",
                initial_state="a",
                states=("a",),
                transitions=(Transition("a", "b", action="go"),),
            )

    def test_terminal_state_with_exit_rejected(self):
        with pytest.raises(ValueError, match="terminal"):
            Workflow(
                name="w",
                description="",
                initial_state="a",
                states=("a", "b"),
                transitions=(Transition("b", "a", action="back"),),
                terminal_states=("b",),
            )


class TestCombineResults:
    @pytest.mark.parametrize(
        "results, expected",
        [
            ([TestResult.PASSED, TestResult.PASSED], TestResult.PASSED),
            ([TestResult.PASSED, TestResult.FAILED], TestResult.FAILED),
            ([TestResult.INCONCLUSIVE, TestResult.FAILED], TestResult.FAILED),
            ([TestResult.PASSED, TestResult.INCONCLUSIVE], TestResult.INCONCLUSIVE),
            ([TestResult.FAILED, TestResult.PENDING], TestResult.PENDING),
            ([], TestResult.PENDING),
        ],
    )
    def test_combine(self, results, expected):
        assert combine_results(results) is expected
