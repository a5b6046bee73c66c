"""
Stock counter rules (``stock_kernel.domain.ledger_rules``).

Responsibility
--------------
Pure arithmetic for the seven counters of a stock entry.  Each movement the
ledger service performs is one function here that returns a new
``StockCounters`` or raises ``CounterUnderflow``; the service translates the
underflow into ``InsufficientStockError`` with location and product attached.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Property-tested without a database.

Reconciliation identities
-------------------------
Outlet ledger::

    total == available + under_testing
    tested == passed == failed == 0

``pending_testing`` is advisory and may exceed ``available`` while several
requests are pending on the same stock; the shortfall surfaces at accept.

Testing ledger::

    total == available == under_testing + tested + passed + failed
    pending_testing == 0
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace

from stock_kernel.domain.values import SerialStatus, StockLedger, TestResult

COUNTER_NAMES: tuple[str, ...] = (
    "total",
    "available",
    "pending_testing",
    "under_testing",
    "tested",
    "passed",
    "failed",
)


class CounterUnderflow(ValueError):
    """A movement would take a counter below zero."""

    def __init__(self, counter: str, have: int, need: int):
        self.counter = counter
        self.have = have
        self.need = need
        super().__init__(f"{counter}={have}, need {need}")


@dataclass(frozen=True)
class StockCounters:
    """Snapshot of one entry's counters."""

    total: int = 0
    available: int = 0
    pending_testing: int = 0
    under_testing: int = 0
    tested: int = 0
    passed: int = 0
    failed: int = 0

    @classmethod
    def of(cls, obj) -> StockCounters:
        """Read the counters off any object exposing them as attributes."""
        return cls(**{name: getattr(obj, name) for name in COUNTER_NAMES})

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def shift(self, **deltas: int) -> StockCounters:
        """Apply deltas; a negative result raises CounterUnderflow."""
        values = self.as_dict()
        for name, delta in deltas.items():
            if values[name] + delta < 0:
                raise CounterUnderflow(name, values[name], -delta)
            values[name] += delta
        return replace(self, **values)


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive, got {quantity}")


def _outcome_counter(result: TestResult) -> str:
    return result.outcome_status.value


def stock_in(c: StockCounters, quantity: int) -> StockCounters:
    """Goods arrive at an outlet."""
    _require_positive(quantity)
    return c.shift(total=quantity, available=quantity)


def reserve(c: StockCounters, quantity: int) -> StockCounters:
    """Soft hold at the outlet; ``available`` is deliberately untouched."""
    _require_positive(quantity)
    if c.available < quantity:
        raise CounterUnderflow("available", c.available, quantity)
    return c.shift(pending_testing=quantity)


def commit(c: StockCounters, quantity: int) -> StockCounters:
    """Hard draw-down at the outlet when the center accepts."""
    _require_positive(quantity)
    return c.shift(
        pending_testing=-quantity,
        available=-quantity,
        under_testing=quantity,
    )


def release(c: StockCounters, quantity: int) -> StockCounters:
    """Drop a reservation (request cancelled)."""
    _require_positive(quantity)
    return c.shift(pending_testing=-quantity)


def receive(c: StockCounters, quantity: int) -> StockCounters:
    """Goods arrive at the testing center."""
    _require_positive(quantity)
    return c.shift(total=quantity, available=quantity, under_testing=quantity)


def record_result(c: StockCounters, quantity: int, result: TestResult) -> StockCounters:
    """Move tested units from ``under_testing`` to their outcome counter."""
    _require_positive(quantity)
    return c.shift(under_testing=-quantity, **{_outcome_counter(result): quantity})


def send_back(c: StockCounters, quantity: int, result: TestResult) -> StockCounters:
    """Tested units leave the testing center."""
    _require_positive(quantity)
    return c.shift(
        total=-quantity,
        available=-quantity,
        **{_outcome_counter(result): -quantity},
    )


def receive_returned(c: StockCounters, quantity: int) -> StockCounters:
    """Tested units are back on the outlet shelf."""
    _require_positive(quantity)
    return c.shift(under_testing=-quantity, available=quantity)


def reconciliation_violations(c: StockCounters, ledger: StockLedger) -> list[str]:
    """Identities the counters break; empty when the entry reconciles."""
    violations = [
        f"{name} is negative ({value})"
        for name, value in c.as_dict().items()
        if value < 0
    ]
    if ledger is StockLedger.OUTLET:
        if c.total != c.available + c.under_testing:
            violations.append(
                f"total {c.total} != available {c.available} "
                f"+ under_testing {c.under_testing}"
            )
        for name in ("tested", "passed", "failed"):
            if getattr(c, name):
                violations.append(f"outlet {name} must be 0, is {getattr(c, name)}")
    else:
        if c.pending_testing:
            violations.append(
                f"testing pending_testing must be 0, is {c.pending_testing}"
            )
        if c.total != c.available:
            violations.append(f"total {c.total} != available {c.available}")
        in_lab = c.under_testing + c.tested + c.passed + c.failed
        if c.available != in_lab:
            violations.append(
                f"available {c.available} != under_testing + outcomes {in_lab}"
            )
    return violations


def serial_count_violations(
    c: StockCounters,
    ledger: StockLedger,
    status_counts: Mapping[SerialStatus, int],
) -> list[str]:
    """Mismatches between counters and the statuses of the entry's serials."""

    def count(*statuses: SerialStatus) -> int:
        return sum(status_counts.get(s, 0) for s in statuses)

    if ledger is StockLedger.OUTLET:
        expected = {
            "available": count(SerialStatus.AVAILABLE, SerialStatus.PENDING_TESTING),
            "pending_testing": count(SerialStatus.PENDING_TESTING),
            "under_testing": count(SerialStatus.UNDER_TESTING),
            "total": count(
                SerialStatus.AVAILABLE,
                SerialStatus.PENDING_TESTING,
                SerialStatus.UNDER_TESTING,
            ),
        }
    else:
        expected = {
            "under_testing": count(SerialStatus.UNDER_TESTING),
            "tested": count(SerialStatus.TESTED),
            "passed": count(SerialStatus.PASSED),
            "failed": count(SerialStatus.FAILED),
            "total": count(
                SerialStatus.UNDER_TESTING,
                SerialStatus.TESTED,
                SerialStatus.PASSED,
                SerialStatus.FAILED,
            ),
        }
    return [
        f"{name} counter {getattr(c, name)} != {want} serial(s)"
        for name, want in expected.items()
        if getattr(c, name) != want
    ]
