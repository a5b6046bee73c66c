"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

A testing request is the only authority that moves stock between the outlet
and testing ledgers.  If a line's product or quantity could change after the
request was created, the reservations already made against the outlet would
no longer match the request, and conservation would silently break.  The
same goes for a serial's transfer history: it is the audit trail of where a
physical unit has been.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our rules:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                 | What is frozen                    | Why
-----------------------|-----------------------------------|----------------------------------
Product                | tracks_serial, from creation      | Ledgers count by it
TestingRequest         | number, locations, requester;     | Requests are the movement record
                       | transition stamps once set;       |
                       | deletion                          |
TestingRequestLine     | product_id, quantity; deletion    | Reservations were made for them
SerialTransferEvent    | everything except the LAST event's| Movement history is append-only
                       | status / test_result; deletion    |

===============================================================================
USAGE
===============================================================================

Called once at startup:

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, func, select
from sqlalchemy.orm.attributes import get_history

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.invariants import StockInvariant
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

REQUEST_FROZEN_FIELDS = frozenset({
    "request_number",
    "from_location_id",
    "to_location_id",
    "requested_by_id",
    "requested_at",
})
# Each transition stamps these once; a stamped value never changes.
REQUEST_SET_ONCE_FIELDS = frozenset({
    "accepted_by_id",
    "accepted_at",
    "completed_by_id",
    "completed_at",
    "cancelled_by_id",
    "cancelled_at",
    "cancel_reason",
})

REQUEST_LINE_FROZEN_FIELDS = frozenset({"product_id", "quantity", "request_id", "line_no"})

TRANSFER_AMENDABLE_FIELDS = frozenset({"status", "test_result"})
TRANSFER_FROZEN_FIELDS = frozenset({
    "serial_record_id",
    "sequence",
    "from_location_id",
    "to_location_id",
    "transferred_at",
    "transfer_type",
    "testing_request_id",
})


def _changed_fields(target, names) -> list[str]:
    return sorted(name for name in names if get_history(target, name).has_changes())


def _block(entity_type: str, target, operation: str, reason: str, fields=None):
    extra = {
        "invariant": StockInvariant.REQUEST_IMMUTABILITY.value,
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if fields:
        extra["fields"] = fields
    logger.error("immutability_violation_blocked", extra=extra)
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# =============================================================================
# Product
# =============================================================================


def _check_product_immutability(mapper, connection, target):
    """Serial tracking is fixed at catalog time."""
    changed = _changed_fields(target, ("tracks_serial",))
    if changed:
        _block(
            "Product",
            target,
            "UPDATE",
            "tracks_serial cannot change after the product is created",
            changed,
        )


# =============================================================================
# Testing request
# =============================================================================


def _check_testing_request_immutability(mapper, connection, target):
    """Header fields are fixed at creation; transition stamps are written once."""
    changed = _changed_fields(target, REQUEST_FROZEN_FIELDS)
    changed += sorted(
        name
        for name in REQUEST_SET_ONCE_FIELDS
        if any(old is not None for old in get_history(target, name).deleted)
    )
    if changed:
        _block(
            "TestingRequest",
            target,
            "UPDATE",
            f"Cannot modify {changed} on a testing request",
            changed,
        )


def _check_testing_request_delete(mapper, connection, target):
    _block("TestingRequest", target, "DELETE", "Testing requests cannot be deleted")


def _check_request_line_immutability(mapper, connection, target):
    """
    Only result fields (test_result, test_remark, tested_at, tested_by_id)
    and the remark may change on a line.
    """
    changed = _changed_fields(target, REQUEST_LINE_FROZEN_FIELDS)
    if changed:
        _block(
            "TestingRequestLine",
            target,
            "UPDATE",
            f"Cannot modify {changed} on a testing request line",
            changed,
        )


def _check_request_line_delete(mapper, connection, target):
    _block(
        "TestingRequestLine",
        target,
        "DELETE",
        "Testing request lines cannot be deleted",
    )


# =============================================================================
# Serial transfer history
# =============================================================================


def _check_transfer_immutability(mapper, connection, target):
    """
    History is append-only.  Recording a test result amends status and
    test_result on the serial's latest event and nothing else.
    """
    from stock_kernel.models.stock import SerialTransferEvent

    frozen = _changed_fields(target, TRANSFER_FROZEN_FIELDS)
    if frozen:
        _block(
            "SerialTransferEvent",
            target,
            "UPDATE",
            f"Cannot modify {frozen} on a transfer event",
            frozen,
        )

    amended = _changed_fields(target, TRANSFER_AMENDABLE_FIELDS)
    if not amended:
        return

    latest = connection.execute(
        select(func.max(SerialTransferEvent.sequence)).where(
            SerialTransferEvent.serial_record_id == target.serial_record_id
        )
    ).scalar()
    if latest is not None and target.sequence < latest:
        _block(
            "SerialTransferEvent",
            target,
            "UPDATE",
            "Only the latest transfer event may be amended",
            amended,
        )


def _check_transfer_delete(mapper, connection, target):
    _block(
        "SerialTransferEvent",
        target,
        "DELETE",
        "Transfer history cannot be deleted",
    )


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from stock_kernel.models.catalog import Product
    from stock_kernel.models.stock import SerialTransferEvent
    from stock_kernel.models.testing_request import TestingRequest, TestingRequestLine

    return (
        (Product, "before_update", _check_product_immutability),
        (TestingRequest, "before_update", _check_testing_request_immutability),
        (TestingRequest, "before_delete", _check_testing_request_delete),
        (TestingRequestLine, "before_update", _check_request_line_immutability),
        (TestingRequestLine, "before_delete", _check_request_line_delete),
        (SerialTransferEvent, "before_update", _check_transfer_immutability),
        (SerialTransferEvent, "before_delete", _check_transfer_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; a listener already registered is skipped.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)
    logger.debug("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to violate the rules on purpose.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
    logger.debug("immutability_listeners_unregistered")
