"""
Stock Kernel Invariants.

These invariants are structural law for the two stock ledgers and the
testing request aggregate. No configuration value or capability grant may
switch them off.

This module only declares them. Enforcement is distributed across
StockLedgerService, TestingWorkflowEngine, RequestNumberService, the
ORM immutability listeners and the table constraints.
"""

from enum import Enum, unique


@unique
class StockInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    QUANTITY_CONSERVATION = "quantity_conservation"
    """Counters reconcile to total and never go negative. Enforced by
    StockLedgerService after every mutation and by CHECK constraints."""

    SERIAL_LOCALITY = "serial_locality"
    """A serial number is unique within one location's ledger, and is
    under_testing at no more than one location at a time. Enforced by
    the (ledger, location, serial) unique constraint and the receive check."""

    SERIAL_EXCLUSIVE_RESERVATION = "serial_exclusive_reservation"
    """Only one pending request may hold a given serial. Enforced by
    row-locked status checks in reserve_for_testing."""

    STATUS_COMPARE_AND_SWAP = "status_compare_and_swap"
    """Each lifecycle transition fires only from its declared source
    status, under a row lock. Enforced by TestingWorkflowEngine."""

    ALL_OR_NOTHING = "all_or_nothing"
    """Every line of a request is validated before any line mutates a
    ledger. Enforced by the check/apply split in StockLedgerService."""

    REQUEST_IMMUTABILITY = "request_immutability"
    """Request line products and quantities never change after creation,
    and transfer history is append-only. Enforced by ORM listeners
    (stock_kernel.db.immutability)."""

    MIRROR_CONSISTENCY = "mirror_consistency"
    """The request's serial copies match the testing-ledger serial
    records after every transition. Enforced by TestingWorkflowEngine."""

    UNIQUE_REQUEST_NUMBER = "unique_request_number"
    """Request numbers are unique. Enforced by a unique constraint with
    bounded retry in RequestNumberService."""


# All invariants as a frozenset for programmatic checks.
ALL_STOCK_INVARIANTS: frozenset[StockInvariant] = frozenset(StockInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_layer_boundaries.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "stock_services",
    "stock_config",
)
