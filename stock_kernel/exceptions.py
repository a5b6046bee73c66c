"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The transport layer maps every failure of a testing-material operation onto
a response the caller can act on ("serial A is already reserved", "only 3
units available").  Parsing messages for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (which product / serial / line)

Example:
    try:
        service.create_request(actor, center_id, lines)
    except SerialUnavailableError as e:
        api_response(code=e.code, serials=e.serial_numbers)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from StockKernelError:

    StockKernelError (base)
    |
    +-- PermissionDeniedError
    |
    +-- NotFoundError
    |   +-- RequestNotFoundError
    |   +-- ProductNotFoundError
    |   +-- LocationNotFoundError
    |   +-- StockEntryNotFoundError
    |   +-- SerialNotFoundError
    |
    +-- InvalidInputError
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- SerialUnavailableError
    |   +-- DuplicateSerialError
    |   +-- LedgerInvariantError
    |
    +-- WorkflowError
    |   +-- AlreadyProcessedError
    |
    +-- ConcurrencyError
    |   +-- RequestNumberConflictError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Access          | PERMISSION_DENIED           | Missing capability or wrong location
----------------|-----------------------------|-----------------------------------------
Lookup          | REQUEST_NOT_FOUND           | Testing request id doesn't exist
                | PRODUCT_NOT_FOUND           | Product id doesn't exist
                | LOCATION_NOT_FOUND          | Location id doesn't exist
                | STOCK_ENTRY_NOT_FOUND       | No ledger entry for location/product
                | SERIAL_NOT_FOUND            | Serial not in the ledger
----------------|-----------------------------|-----------------------------------------
Input           | INVALID_INPUT               | Bad line, quantity, serial mismatch
----------------|-----------------------------|-----------------------------------------
Stock           | INSUFFICIENT_STOCK          | Counter would go below zero
                | SERIAL_UNAVAILABLE          | Serial not in the required status
                | DUPLICATE_SERIAL            | Serial already in destination ledger
                | LEDGER_INVARIANT_VIOLATION  | Counters fail to reconcile
----------------|-----------------------------|-----------------------------------------
Workflow        | ALREADY_PROCESSED           | Request status no longer matches
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONFLICT                    | Request number retries exhausted
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Edit of immutable field / history

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ALREADY PROCESSED IS A LOST RACE, NOT A BUG:

    try:
        service.accept_request(actor, request_id)
    except AlreadyProcessedError as e:
        # Another technician accepted first
        show(f"Request is already {e.actual_status}")

2. CONFLICT IS TRANSIENT:

    except RequestNumberConflictError:
        retry_later()

3. LEDGER INVARIANT ERRORS ARE CRITICAL:

    except LedgerInvariantError as e:
        alert(e.violations)

===============================================================================
"""

from typing import Any, Iterable


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"


# Access


class PermissionDeniedError(StockKernelError):
    """Actor lacks the capability, or does not belong to the required location."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, actor_id: Any, capability: str, reason: str):
        self.actor_id = str(actor_id)
        self.capability = capability
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} may not perform {capability}: {reason}"
        )


# Lookup


class NotFoundError(StockKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class RequestNotFoundError(NotFoundError):
    """Testing request with given ID was not found."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: Any):
        self.request_id = str(request_id)
        super().__init__(f"Testing request not found: {request_id}")


class ProductNotFoundError(NotFoundError):
    """Product with given ID was not found."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: Any, line_index: int | None = None):
        self.product_id = str(product_id)
        self.line_index = line_index
        where = f" (line {line_index})" if line_index is not None else ""
        super().__init__(f"Product not found: {product_id}{where}")


class LocationNotFoundError(NotFoundError):
    """Location with given ID was not found."""

    code: str = "LOCATION_NOT_FOUND"

    def __init__(self, location_id: Any):
        self.location_id = str(location_id)
        super().__init__(f"Location not found: {location_id}")


class StockEntryNotFoundError(NotFoundError):
    """No ledger entry exists for the location/product pair."""

    code: str = "STOCK_ENTRY_NOT_FOUND"

    def __init__(self, ledger: str, location_id: Any, product_id: Any):
        self.ledger = ledger
        self.location_id = str(location_id)
        self.product_id = str(product_id)
        super().__init__(
            f"No {ledger} stock for product {product_id} at location {location_id}"
        )


class SerialNotFoundError(NotFoundError):
    """Serial number does not exist in the ledger."""

    code: str = "SERIAL_NOT_FOUND"

    def __init__(self, location_id: Any, serial_number: str):
        self.location_id = str(location_id)
        self.serial_number = serial_number
        super().__init__(
            f"Serial {serial_number} not found at location {location_id}"
        )


# Input


class InvalidInputError(StockKernelError):
    """Malformed request: bad line, bad quantity, serial/quantity mismatch."""

    code: str = "INVALID_INPUT"

    def __init__(
        self,
        reason: str,
        line_index: int | None = None,
        product_id: Any = None,
    ):
        self.reason = reason
        self.line_index = line_index
        self.product_id = str(product_id) if product_id is not None else None
        where = f" (line {line_index})" if line_index is not None else ""
        super().__init__(f"Invalid input{where}: {reason}")


# Stock


class StockError(StockKernelError):
    """Base exception for ledger errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """A counter does not hold enough quantity for the requested movement."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        location_id: Any,
        product_id: Any,
        counter: str,
        available: int,
        requested: int,
    ):
        self.location_id = str(location_id)
        self.product_id = str(product_id)
        self.counter = counter
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id} at {location_id}: "
            f"{counter}={available}, requested {requested}"
        )


class SerialUnavailableError(StockError):
    """One or more serials are not in the status the operation requires."""

    code: str = "SERIAL_UNAVAILABLE"

    def __init__(
        self,
        location_id: Any,
        product_id: Any,
        serial_numbers: Iterable[str],
        reason: str,
    ):
        self.location_id = str(location_id)
        self.product_id = str(product_id)
        self.serial_numbers = tuple(serial_numbers)
        self.reason = reason
        super().__init__(
            f"Serials {', '.join(self.serial_numbers)} unavailable "
            f"for product {product_id}: {reason}"
        )


class DuplicateSerialError(StockError):
    """Serial numbers already exist in the destination ledger."""

    code: str = "DUPLICATE_SERIAL"

    def __init__(
        self,
        location_id: Any,
        product_id: Any,
        serial_numbers: Iterable[str],
    ):
        self.location_id = str(location_id)
        self.product_id = str(product_id)
        self.serial_numbers = tuple(serial_numbers)
        super().__init__(
            f"Serials {', '.join(self.serial_numbers)} already exist "
            f"at location {location_id}"
        )


class LedgerInvariantError(StockError):
    """Stock entry counters no longer reconcile."""

    code: str = "LEDGER_INVARIANT_VIOLATION"

    def __init__(self, entry_id: Any, violations: Iterable[str]):
        self.entry_id = str(entry_id)
        self.violations = tuple(violations)
        super().__init__(
            f"Stock entry {entry_id} failed reconciliation: "
            + "; ".join(self.violations)
        )


# Workflow


class WorkflowError(StockKernelError):
    """Base exception for testing request lifecycle errors."""

    code: str = "WORKFLOW_ERROR"


class AlreadyProcessedError(WorkflowError):
    """Request status no longer matches the operation's precondition."""

    code: str = "ALREADY_PROCESSED"

    def __init__(
        self,
        request_id: Any,
        expected_status: str,
        actual_status: str,
        action: str = "",
    ):
        self.request_id = str(request_id)
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.action = action
        super().__init__(
            f"Testing request {request_id} is {actual_status}; "
            f"{action or 'operation'} requires {expected_status}"
        )


# Concurrency


class ConcurrencyError(StockKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class RequestNumberConflictError(ConcurrencyError):
    """Request number generation collided on every allowed attempt."""

    code: str = "CONFLICT"

    def __init__(self, request_number: str, attempts: int):
        self.request_number = request_number
        self.attempts = attempts
        super().__init__(
            f"Request number {request_number} still collides after "
            f"{attempts} attempt(s)"
        )


# Immutability


class ImmutabilityError(StockKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Request headers and lines, product serial tracking and transfer
    history are fixed once written.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
