"""
Testing request lifecycle (``stock_kernel.domain.testing_lifecycle``).

Responsibility
--------------
Declares the testing request state machine as data.  The workflow engine
looks transitions up here instead of hard-coding status comparisons, and
runs each transition's checks under its guard, logging the guard name
when a check fails.

    pending_testing --accept--> under_testing --complete--> completed
          |                          |
          +--cancel--> cancelled     +--record_result--> (stays)

Architecture position
---------------------
**Kernel domain layer** -- pure data.  Consumed by
``stock_kernel.services.testing_workflow``.
"""

from stock_kernel.domain.values import RequestStatus
from stock_kernel.domain.workflow import Guard, Transition, Workflow
from stock_kernel.logging_config import get_logger

logger = get_logger("domain.testing_lifecycle")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

ALL_LINES_COMMITTABLE = Guard(
    name="all_lines_committable",
    description="Every line commits at the outlet and is receivable at the center",
)

ITEM_AWAITING_RESULT = Guard(
    name="item_awaiting_result",
    description="The serial or line being scored has no result yet",
)

ALL_RESULTS_RECORDED = Guard(
    name="all_results_recorded",
    description="Every serial and every non-serialized line carries a result",
)

RESERVATIONS_RELEASABLE = Guard(
    name="reservations_releasable",
    description="Every reserved serial is still pending at the outlet",
)


# -----------------------------------------------------------------------------
# Workflow
# -----------------------------------------------------------------------------

ACCEPT = "accept"
RECORD_RESULT = "record_result"
COMPLETE = "complete"
CANCEL = "cancel"

TESTING_REQUEST_WORKFLOW = Workflow(
    name="testing_request",
    description="Outlet stock sent to a testing center and returned",
    initial_state=RequestStatus.PENDING_TESTING.value,
    states=tuple(s.value for s in RequestStatus),
    terminal_states=(RequestStatus.COMPLETED.value, RequestStatus.CANCELLED.value),
    transitions=(
        Transition(
            RequestStatus.PENDING_TESTING.value,
            RequestStatus.UNDER_TESTING.value,
            action=ACCEPT,
            guard=ALL_LINES_COMMITTABLE,
        ),
        Transition(
            RequestStatus.PENDING_TESTING.value,
            RequestStatus.CANCELLED.value,
            action=CANCEL,
            guard=RESERVATIONS_RELEASABLE,
        ),
        Transition(
            RequestStatus.UNDER_TESTING.value,
            RequestStatus.UNDER_TESTING.value,
            action=RECORD_RESULT,
            guard=ITEM_AWAITING_RESULT,
        ),
        Transition(
            RequestStatus.UNDER_TESTING.value,
            RequestStatus.COMPLETED.value,
            action=COMPLETE,
            guard=ALL_RESULTS_RECORDED,
        ),
    ),
)

logger.debug(
    "testing_request_workflow_registered",
    extra={
        "workflow_name": TESTING_REQUEST_WORKFLOW.name,
        "state_count": len(TESTING_REQUEST_WORKFLOW.states),
        "transition_count": len(TESTING_REQUEST_WORKFLOW.transitions),
    },
)


def required_status(action: str) -> RequestStatus:
    """The single status ``action`` fires from."""
    sources = TESTING_REQUEST_WORKFLOW.source_states(action)
    if len(sources) != 1:
        raise ValueError(f"Action {action!r} has {len(sources)} source states")
    return RequestStatus(sources[0])
