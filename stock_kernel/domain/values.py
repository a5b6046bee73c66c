"""
Value enums shared by the domain, the ORM models and the services.

Architecture position:
    Kernel > Domain -- pure values, zero I/O.  Models import these so that a
    status string means the same thing in a column, a DTO and a log line.
"""

from enum import Enum


class LocationType(str, Enum):
    """Kind of location holding stock."""

    OUTLET = "outlet"
    CENTER = "center"


class StockLedger(str, Enum):
    """Which of the two parallel ledgers an entry or serial belongs to."""

    OUTLET = "outlet"
    TESTING = "testing"


class SerialStatus(str, Enum):
    """Lifecycle status of one serial record."""

    AVAILABLE = "available"
    PENDING_TESTING = "pending_testing"
    UNDER_TESTING = "under_testing"
    TESTED = "tested"
    PASSED = "passed"
    FAILED = "failed"
    RETURNED = "returned"
    REJECTED = "rejected"


class TestResult(str, Enum):
    """Outcome of testing one serial or one non-serialized line."""

    __test__ = False

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"

    @property
    def is_recorded(self) -> bool:
        return self is not TestResult.PENDING

    @property
    def outcome_status(self) -> SerialStatus:
        """Serial status (and ledger counter) an outcome lands in."""
        if self is TestResult.PASSED:
            return SerialStatus.PASSED
        if self is TestResult.FAILED:
            return SerialStatus.FAILED
        if self is TestResult.INCONCLUSIVE:
            return SerialStatus.TESTED
        raise ValueError("A pending result has no outcome status")


class TransferType(str, Enum):
    """Kind of movement recorded in a serial's transfer history."""

    STOCK_INBOUND = "stock_inbound"
    OUTLET_TO_TESTING = "outlet_to_testing"
    TESTING_INBOUND = "testing_inbound"
    TESTING_RETURN = "testing_return"
    TESTING_FAILED_RETURN = "testing_failed_return"
    TESTING_CANCELLED = "testing_cancelled"


class RequestStatus(str, Enum):
    """Lifecycle status of a testing request."""

    PENDING_TESTING = "pending_testing"
    UNDER_TESTING = "under_testing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def combine_results(results) -> TestResult:
    """
    Reduce per-serial results to one line result.

    Any failure fails the line; all passes pass it; any pending keeps it
    pending; otherwise the line is inconclusive.
    """
    results = list(results)
    if not results or any(r is TestResult.PENDING for r in results):
        return TestResult.PENDING
    if any(r is TestResult.FAILED for r in results):
        return TestResult.FAILED
    if all(r is TestResult.PASSED for r in results):
        return TestResult.PASSED
    return TestResult.INCONCLUSIVE
