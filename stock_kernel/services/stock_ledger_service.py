"""
StockLedgerService -- movements on the outlet and testing-center ledgers.

Responsibility:
    Every change to a StockEntry counter or a SerialRecord status goes
    through this service.  Each movement comes as a pair:

        check_<movement>(...)   validate against locked rows, mutate nothing
        <movement>(...)         re-validate, then apply

    so the workflow engine can check every line of a request before it
    applies any of them.

    Outlet ledger movements:  receive_stock, reserve_for_testing,
        commit_to_testing, release_reservation, receive_returned
    Testing ledger movements: receive_for_testing, record_test_result,
        record_quantity_result, return_to_outlet, return_quantity_to_outlet

Architecture position:
    Kernel > Services -- imperative shell.  Counter arithmetic is delegated
    to the pure ``stock_kernel.domain.ledger_rules``.

Invariants enforced:
    QUANTITY_CONSERVATION -- counters are re-reconciled after every apply;
        a failure raises LedgerInvariantError and the caller rolls back.
    SERIAL_EXCLUSIVE_RESERVATION -- serial rows are read FOR UPDATE and
        their status is checked under the lock.
    SERIAL_LOCALITY -- receive refuses serials already active in the
        destination ledger.

Failure modes:
    - InsufficientStockError when a counter would go negative.
    - SerialUnavailableError when a serial is missing from the outlet or not
      in the required status.
    - DuplicateSerialError when a received serial is already in the
      destination ledger.
    - SerialNotFoundError when a testing-ledger serial does not exist.
    - StockEntryNotFoundError when a testing-ledger entry does not exist.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain import ledger_rules
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import ProductInfo
from stock_kernel.domain.ledger_rules import CounterUnderflow, StockCounters
from stock_kernel.domain.values import (
    SerialStatus,
    StockLedger,
    TestResult,
    TransferType,
)
from stock_kernel.exceptions import (
    DuplicateSerialError,
    InsufficientStockError,
    InvalidInputError,
    LedgerInvariantError,
    SerialNotFoundError,
    SerialUnavailableError,
    StockEntryNotFoundError,
)
from stock_kernel.invariants import StockInvariant
from stock_kernel.logging_config import get_logger
from stock_kernel.models.stock import SerialRecord, SerialTransferEvent, StockEntry
from stock_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")

_OUTCOME_STATUSES = frozenset({SerialStatus.TESTED, SerialStatus.PASSED, SerialStatus.FAILED})


class StockLedgerService(BaseService[StockEntry]):
    """
    Service for moving stock within and between the two ledgers.

    Contract:
        Runs inside the caller's transaction and only flushes.  Rows are
        locked with SELECT ... FOR UPDATE; entries are created on first
        use under a savepoint so a concurrent creator is tolerated.

    Non-goals:
        - Does NOT know about request status; the workflow engine decides
          which movements a transition needs.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # =========================================================================
    # Row access
    # =========================================================================

    def _lock_entry(
        self, ledger: StockLedger, location_id: UUID, product_id: UUID
    ) -> StockEntry | None:
        return self.session.execute(
            select(StockEntry)
            .where(
                StockEntry.ledger == ledger.value,
                StockEntry.location_id == location_id,
                StockEntry.product_id == product_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_or_create_entry(
        self,
        ledger: StockLedger,
        location_id: UUID,
        product_id: UUID,
        actor_id: UUID,
    ) -> StockEntry:
        """Lock the entry, creating an all-zero one if absent."""
        entry = self._lock_entry(ledger, location_id, product_id)
        if entry is not None:
            return entry

        # Another transaction may create the same entry; the unique key
        # turns that into an IntegrityError we recover from.
        savepoint = self.session.begin_nested()
        try:
            entry = StockEntry(
                ledger=ledger,
                location_id=location_id,
                product_id=product_id,
                created_by_id=actor_id,
                **StockCounters().as_dict(),
            )
            self.session.add(entry)
            self.session.flush()
            savepoint.commit()
            logger.debug(
                "stock_entry_created",
                extra={
                    "ledger": ledger.value,
                    "location_id": str(location_id),
                    "product_id": str(product_id),
                },
            )
            return entry
        except IntegrityError:
            savepoint.rollback()
            logger.debug(
                "stock_entry_create_race_retry",
                extra={"ledger": ledger.value, "location_id": str(location_id)},
            )
            entry = self._lock_entry(ledger, location_id, product_id)
            if entry is None:
                raise
            return entry

    def _lock_serials(
        self,
        ledger: StockLedger,
        location_id: UUID,
        product_id: UUID,
        serial_numbers: Sequence[str],
    ) -> dict[str, SerialRecord]:
        if not serial_numbers:
            return {}
        rows = self.session.execute(
            select(SerialRecord)
            .where(
                SerialRecord.ledger == ledger.value,
                SerialRecord.location_id == location_id,
                SerialRecord.product_id == product_id,
                SerialRecord.serial_number.in_(list(serial_numbers)),
            )
            .order_by(SerialRecord.serial_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars()
        return {row.serial_number: row for row in rows}

    # =========================================================================
    # Shared helpers
    # =========================================================================

    @staticmethod
    def _counters(entry: StockEntry | None) -> StockCounters:
        return StockCounters.of(entry) if entry is not None else StockCounters()

    @staticmethod
    def _plan(location_id, product_id, rule, *args) -> StockCounters:
        """Run a counter rule, translating underflow into InsufficientStockError."""
        try:
            return rule(*args)
        except CounterUnderflow as exc:
            raise InsufficientStockError(
                location_id=location_id,
                product_id=product_id,
                counter=exc.counter,
                available=exc.have,
                requested=exc.need,
            ) from exc

    def _write_counters(
        self, entry: StockEntry, counters: StockCounters, actor_id: UUID
    ) -> None:
        for name, value in counters.as_dict().items():
            setattr(entry, name, value)
        entry.updated_by_id = actor_id

        violations = ledger_rules.reconciliation_violations(
            counters, StockLedger(entry.ledger)
        )
        if violations:
            logger.critical(
                "ledger_invariant_violated",
                extra={
                    "invariant": StockInvariant.QUANTITY_CONSERVATION.value,
                    "entry_id": str(entry.id),
                    "violations": violations,
                },
            )
            raise LedgerInvariantError(entry.id, violations)

    def _append_transfer(
        self,
        serial: SerialRecord,
        *,
        from_location_id: UUID | None,
        to_location_id: UUID | None,
        transfer_type: TransferType,
        status: SerialStatus,
        testing_request_id: UUID | None,
        test_result: TestResult | None = None,
    ) -> SerialTransferEvent:
        last = serial.last_transfer
        event = SerialTransferEvent(
            sequence=(last.sequence + 1) if last is not None else 1,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            transferred_at=self._clock.now(),
            transfer_type=transfer_type,
            status=status,
            test_result=test_result,
            testing_request_id=testing_request_id,
        )
        serial.transfers.append(event)
        return event

    @staticmethod
    def _require_serial_count(
        product: ProductInfo, quantity: int, serial_numbers: Sequence[str]
    ) -> None:
        if product.tracks_serial:
            if len(serial_numbers) != quantity:
                raise InvalidInputError(
                    f"{len(serial_numbers)} serial(s) given for quantity {quantity}",
                    product_id=product.id,
                )
            duplicates = sorted(s for s, n in Counter(serial_numbers).items() if n > 1)
            if duplicates:
                raise InvalidInputError(
                    f"duplicate serial(s) {', '.join(duplicates)}",
                    product_id=product.id,
                )
        elif serial_numbers:
            raise InvalidInputError(
                f"product {product.code} does not track serials",
                product_id=product.id,
            )

    def _require_serials(
        self,
        ledger: StockLedger,
        location_id: UUID,
        product: ProductInfo,
        serial_numbers: Sequence[str],
        allowed: frozenset[SerialStatus],
        *,
        request_id: UUID | None = None,
        missing_is_not_found: bool = False,
    ) -> dict[str, SerialRecord]:
        """Lock serials and insist each is present and in an allowed status."""
        rows = self._lock_serials(ledger, location_id, product.id, serial_numbers)

        missing = [s for s in serial_numbers if s not in rows]
        if missing:
            if missing_is_not_found:
                raise SerialNotFoundError(location_id, missing[0])
            raise SerialUnavailableError(
                location_id, product.id, missing, "not held at this location"
            )

        wrong = [
            s
            for s in serial_numbers
            if rows[s].status not in allowed
            or (request_id is not None and rows[s].testing_request_id != request_id)
            or (ledger is StockLedger.OUTLET
                and rows[s].status == SerialStatus.AVAILABLE
                and rows[s].current_location_id != location_id)
        ]
        if wrong:
            statuses = ", ".join(f"{s}={SerialStatus(rows[s].status).value}" for s in wrong)
            logger.info(
                "serial_unavailable",
                extra={
                    "invariant": StockInvariant.SERIAL_EXCLUSIVE_RESERVATION.value,
                    "location_id": str(location_id),
                    "product_id": str(product.id),
                    "serial_numbers": wrong,
                },
            )
            raise SerialUnavailableError(
                location_id,
                product.id,
                wrong,
                f"expected {'/'.join(sorted(s.value for s in allowed))}, found {statuses}",
            )
        return rows

    # =========================================================================
    # Outlet: stock in
    # =========================================================================

    def receive_stock(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        actor_id: UUID,
    ) -> StockEntry:
        """
        Goods arrive at an outlet (purchase inbound).

        Serialized products get one available SerialRecord per serial.
        """
        if quantity <= 0:
            raise InvalidInputError(f"quantity must be positive, got {quantity}")
        self._require_serial_count(product, quantity, serial_numbers)

        entry = self._get_or_create_entry(
            StockLedger.OUTLET, location_id, product.id, actor_id
        )
        existing = self._lock_serials(
            StockLedger.OUTLET, location_id, product.id, serial_numbers
        )
        if existing:
            raise DuplicateSerialError(location_id, product.id, sorted(existing))

        counters = self._plan(
            location_id, product.id, ledger_rules.stock_in, self._counters(entry), quantity
        )
        for serial_number in serial_numbers:
            serial = SerialRecord(
                ledger=StockLedger.OUTLET,
                location_id=location_id,
                product_id=product.id,
                serial_number=serial_number,
                status=SerialStatus.AVAILABLE,
                current_location_id=location_id,
                test_result=TestResult.PENDING,
            )
            entry.serials.append(serial)
            self._append_transfer(
                serial,
                from_location_id=None,
                to_location_id=location_id,
                transfer_type=TransferType.STOCK_INBOUND,
                status=SerialStatus.AVAILABLE,
                testing_request_id=None,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_received",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "serial_count": len(serial_numbers),
            },
        )
        return entry

    # =========================================================================
    # Outlet: reserve (create)
    # =========================================================================

    def check_reserve_for_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
    ) -> StockCounters:
        """Validate a reservation; returns the counters it would produce."""
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        if product.tracks_serial:
            if entry is None:
                raise SerialUnavailableError(
                    location_id, product.id, serial_numbers, "no stock at this location"
                )
            self._require_serials(
                StockLedger.OUTLET,
                location_id,
                product,
                serial_numbers,
                frozenset({SerialStatus.AVAILABLE}),
            )
        return self._plan(
            location_id, product.id, ledger_rules.reserve, self._counters(entry), quantity
        )

    def reserve_for_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        to_location_id: UUID,
        request_id: UUID,
        actor_id: UUID,
    ) -> None:
        """
        Soft hold at the outlet.  ``available`` is not drawn down here;
        serials move to pending_testing and are held for ``request_id``.
        """
        counters = self.check_reserve_for_testing(
            location_id, product, quantity, serial_numbers
        )
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        rows = self._lock_serials(StockLedger.OUTLET, location_id, product.id, serial_numbers)
        for serial_number in serial_numbers:
            serial = rows[serial_number]
            serial.status = SerialStatus.PENDING_TESTING
            serial.testing_request_id = request_id
            self._append_transfer(
                serial,
                from_location_id=location_id,
                to_location_id=to_location_id,
                transfer_type=TransferType.OUTLET_TO_TESTING,
                status=SerialStatus.PENDING_TESTING,
                testing_request_id=request_id,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_reserved_for_testing",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "serial_numbers": list(serial_numbers),
                "request_id": str(request_id),
            },
        )

    # =========================================================================
    # Outlet: commit (accept)
    # =========================================================================

    def check_commit_to_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        request_id: UUID,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        if entry is None:
            raise InsufficientStockError(location_id, product.id, "available", 0, quantity)
        if product.tracks_serial:
            self._require_serials(
                StockLedger.OUTLET,
                location_id,
                product,
                serial_numbers,
                frozenset({SerialStatus.PENDING_TESTING}),
                request_id=request_id,
            )
        return self._plan(
            location_id, product.id, ledger_rules.commit, self._counters(entry), quantity
        )

    def commit_to_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        to_location_id: UUID,
        request_id: UUID,
        actor_id: UUID,
    ) -> None:
        """Hard draw-down of ``available``; serials leave for the center."""
        counters = self.check_commit_to_testing(
            location_id, product, quantity, serial_numbers, request_id=request_id
        )
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        rows = self._lock_serials(StockLedger.OUTLET, location_id, product.id, serial_numbers)
        for serial_number in serial_numbers:
            serial = rows[serial_number]
            serial.status = SerialStatus.UNDER_TESTING
            serial.current_location_id = to_location_id
            self._append_transfer(
                serial,
                from_location_id=location_id,
                to_location_id=to_location_id,
                transfer_type=TransferType.OUTLET_TO_TESTING,
                status=SerialStatus.UNDER_TESTING,
                testing_request_id=request_id,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_committed_to_testing",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "request_id": str(request_id),
            },
        )

    # =========================================================================
    # Outlet: release (cancel)
    # =========================================================================

    def check_release_reservation(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        request_id: UUID,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        if entry is None:
            raise InsufficientStockError(
                location_id, product.id, "pending_testing", 0, quantity
            )
        if product.tracks_serial:
            self._require_serials(
                StockLedger.OUTLET,
                location_id,
                product,
                serial_numbers,
                frozenset({SerialStatus.PENDING_TESTING}),
                request_id=request_id,
            )
        return self._plan(
            location_id, product.id, ledger_rules.release, self._counters(entry), quantity
        )

    def release_reservation(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        request_id: UUID,
        actor_id: UUID,
    ) -> None:
        """Undo a reservation: pending serials become available again."""
        counters = self.check_release_reservation(
            location_id, product, quantity, serial_numbers, request_id=request_id
        )
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        rows = self._lock_serials(StockLedger.OUTLET, location_id, product.id, serial_numbers)
        for serial_number in serial_numbers:
            serial = rows[serial_number]
            serial.status = SerialStatus.AVAILABLE
            serial.testing_request_id = None
            self._append_transfer(
                serial,
                from_location_id=location_id,
                to_location_id=location_id,
                transfer_type=TransferType.TESTING_CANCELLED,
                status=SerialStatus.AVAILABLE,
                testing_request_id=request_id,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_reservation_released",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "request_id": str(request_id),
            },
        )

    # =========================================================================
    # Outlet: returned from testing (complete)
    # =========================================================================

    def check_receive_returned(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        request_id: UUID,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        if entry is None:
            raise InsufficientStockError(
                location_id, product.id, "under_testing", 0, quantity
            )
        if product.tracks_serial:
            self._require_serials(
                StockLedger.OUTLET,
                location_id,
                product,
                serial_numbers,
                frozenset({SerialStatus.UNDER_TESTING}),
                request_id=request_id,
            )
        return self._plan(
            location_id,
            product.id,
            ledger_rules.receive_returned,
            self._counters(entry),
            quantity,
        )

    def receive_returned(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        from_location_id: UUID,
        request_id: UUID,
        results: dict[str, SerialRecord] | None = None,
        actor_id: UUID,
    ) -> None:
        """
        Tested units are back at the outlet and available again.

        ``results`` maps serial numbers to their testing-ledger records so the
        outlet copy keeps the latest test outcome.
        """
        counters = self.check_receive_returned(
            location_id, product, quantity, serial_numbers, request_id=request_id
        )
        entry = self._lock_entry(StockLedger.OUTLET, location_id, product.id)
        rows = self._lock_serials(StockLedger.OUTLET, location_id, product.id, serial_numbers)
        results = results or {}
        for serial_number in serial_numbers:
            serial = rows[serial_number]
            tested = results.get(serial_number)
            if tested is not None:
                serial.test_result = tested.test_result
                serial.test_remark = tested.test_remark
                serial.tested_at = tested.tested_at
                serial.tested_by_id = tested.tested_by_id
            serial.status = SerialStatus.AVAILABLE
            serial.current_location_id = location_id
            serial.testing_request_id = None
            self._append_transfer(
                serial,
                from_location_id=from_location_id,
                to_location_id=location_id,
                transfer_type=_return_type(TestResult(serial.test_result)),
                status=SerialStatus.AVAILABLE,
                test_result=TestResult(serial.test_result),
                testing_request_id=request_id,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_returned_to_outlet",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "request_id": str(request_id),
            },
        )

    # =========================================================================
    # Testing center: receive (accept)
    # =========================================================================

    def check_receive_for_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        original_outlet_id: UUID,
    ) -> StockCounters:
        """
        Validate a receipt at the center.

        A serial already in this ledger is a duplicate unless it is a
        returned unit coming back from the same outlet, which is reopened.
        """
        self._require_serial_count(product, quantity, serial_numbers)
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        existing = self._lock_serials(
            StockLedger.TESTING, location_id, product.id, serial_numbers
        )
        duplicates = [
            s
            for s, row in existing.items()
            if row.status != SerialStatus.RETURNED
            or row.original_outlet_id != original_outlet_id
        ]
        if duplicates:
            logger.warning(
                "duplicate_serial_rejected",
                extra={
                    "invariant": StockInvariant.SERIAL_LOCALITY.value,
                    "location_id": str(location_id),
                    "product_id": str(product.id),
                    "serial_numbers": sorted(duplicates),
                },
            )
            raise DuplicateSerialError(location_id, product.id, sorted(duplicates))
        return self._plan(
            location_id, product.id, ledger_rules.receive, self._counters(entry), quantity
        )

    def receive_for_testing(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        serial_numbers: Sequence[str] = (),
        *,
        original_outlet_id: UUID,
        request_id: UUID,
        actor_id: UUID,
        status: SerialStatus = SerialStatus.UNDER_TESTING,
    ) -> dict[str, SerialRecord]:
        """
        Create-or-merge the center's entry and add the incoming serials.

        Merge rule: counters add ``quantity`` to total, available and
        under_testing; serials are appended (or reopened, see the check).
        """
        counters = self.check_receive_for_testing(
            location_id,
            product,
            quantity,
            serial_numbers,
            original_outlet_id=original_outlet_id,
        )
        entry = self._get_or_create_entry(
            StockLedger.TESTING, location_id, product.id, actor_id
        )
        existing = self._lock_serials(
            StockLedger.TESTING, location_id, product.id, serial_numbers
        )

        received: dict[str, SerialRecord] = {}
        for serial_number in serial_numbers:
            serial = existing.get(serial_number)
            if serial is None:
                serial = SerialRecord(
                    ledger=StockLedger.TESTING,
                    location_id=location_id,
                    product_id=product.id,
                    serial_number=serial_number,
                    original_outlet_id=original_outlet_id,
                )
                entry.serials.append(serial)
            serial.status = status
            serial.current_location_id = location_id
            serial.testing_request_id = request_id
            serial.test_result = TestResult.PENDING
            serial.test_remark = None
            serial.tested_at = None
            serial.tested_by_id = None
            self._append_transfer(
                serial,
                from_location_id=original_outlet_id,
                to_location_id=location_id,
                transfer_type=TransferType.TESTING_INBOUND,
                status=status,
                testing_request_id=request_id,
            )
            received[serial_number] = serial
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "stock_received_for_testing",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "original_outlet_id": str(original_outlet_id),
                "request_id": str(request_id),
            },
        )
        return received

    # =========================================================================
    # Testing center: results
    # =========================================================================

    def check_record_test_result(
        self,
        location_id: UUID,
        product: ProductInfo,
        serial_number: str,
        *,
        request_id: UUID | None = None,
    ) -> SerialRecord:
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        if entry is None:
            raise SerialNotFoundError(location_id, serial_number)
        rows = self._require_serials(
            StockLedger.TESTING,
            location_id,
            product,
            [serial_number],
            frozenset({SerialStatus.UNDER_TESTING}),
            request_id=request_id,
            missing_is_not_found=True,
        )
        return rows[serial_number]

    def record_test_result(
        self,
        location_id: UUID,
        product: ProductInfo,
        serial_number: str,
        result: TestResult,
        remark: str | None = None,
        *,
        tested_by_id: UUID,
        request_id: UUID | None = None,
    ) -> SerialRecord:
        """
        Score one serial: under_testing moves to its outcome counter.

        The serial's latest transfer event is amended with the outcome; no
        new event is written.
        """
        if not result.is_recorded:
            raise InvalidInputError("a test result cannot be 'pending'", product_id=product.id)
        serial = self.check_record_test_result(
            location_id, product, serial_number, request_id=request_id
        )
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        counters = self._plan(
            location_id,
            product.id,
            ledger_rules.record_result,
            self._counters(entry),
            1,
            result,
        )

        serial.status = result.outcome_status
        serial.test_result = result
        serial.test_remark = remark
        serial.tested_at = self._clock.now()
        serial.tested_by_id = tested_by_id
        last = serial.last_transfer
        if last is not None:
            last.status = serial.status
            last.test_result = result
        self._write_counters(entry, counters, tested_by_id)
        self.session.flush()

        logger.info(
            "serial_test_result_recorded",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "serial_number": serial_number,
                "test_result": result.value,
            },
        )
        return serial

    def check_record_quantity_result(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        result: TestResult,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        if entry is None:
            raise StockEntryNotFoundError(StockLedger.TESTING.value, location_id, product.id)
        return self._plan(
            location_id,
            product.id,
            ledger_rules.record_result,
            self._counters(entry),
            quantity,
            result,
        )

    def record_quantity_result(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        result: TestResult,
        *,
        tested_by_id: UUID,
    ) -> None:
        """Score ``quantity`` units of a non-serialized product at once."""
        if not result.is_recorded:
            raise InvalidInputError("a test result cannot be 'pending'", product_id=product.id)
        counters = self.check_record_quantity_result(location_id, product, quantity, result)
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        self._write_counters(entry, counters, tested_by_id)
        self.session.flush()

        logger.info(
            "quantity_test_result_recorded",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "test_result": result.value,
            },
        )

    # =========================================================================
    # Testing center: return (complete)
    # =========================================================================

    def check_return_to_outlet(
        self,
        location_id: UUID,
        product: ProductInfo,
        serial_numbers: Sequence[str],
        *,
        request_id: UUID | None = None,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        if entry is None:
            raise SerialNotFoundError(location_id, serial_numbers[0])
        rows = self._require_serials(
            StockLedger.TESTING,
            location_id,
            product,
            serial_numbers,
            _OUTCOME_STATUSES,
            request_id=request_id,
            missing_is_not_found=True,
        )
        counters = self._counters(entry)
        for serial_number in serial_numbers:
            counters = self._plan(
                location_id,
                product.id,
                ledger_rules.send_back,
                counters,
                1,
                TestResult(rows[serial_number].test_result),
            )
        return counters

    def return_to_outlet(
        self,
        location_id: UUID,
        product: ProductInfo,
        serial_numbers: Sequence[str],
        *,
        destination_id: UUID,
        return_type: TransferType | None = None,
        request_id: UUID | None = None,
        actor_id: UUID,
    ) -> dict[str, SerialRecord]:
        """
        Tested serials leave the center for ``destination_id``.

        Each serial comes off total, available and the outcome counter
        matching its result.  ``return_type`` defaults per serial to
        testing_failed_return for failures and testing_return otherwise.
        """
        counters = self.check_return_to_outlet(
            location_id, product, serial_numbers, request_id=request_id
        )
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        rows = self._lock_serials(StockLedger.TESTING, location_id, product.id, serial_numbers)
        for serial_number in serial_numbers:
            serial = rows[serial_number]
            result = TestResult(serial.test_result)
            serial.status = SerialStatus.RETURNED
            serial.current_location_id = destination_id
            self._append_transfer(
                serial,
                from_location_id=location_id,
                to_location_id=destination_id,
                transfer_type=return_type or _return_type(result),
                status=SerialStatus.RETURNED,
                test_result=result,
                testing_request_id=serial.testing_request_id,
            )
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "serials_returned_from_testing",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "destination_id": str(destination_id),
                "serial_numbers": list(serial_numbers),
            },
        )
        return rows

    def check_return_quantity_to_outlet(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        result: TestResult,
    ) -> StockCounters:
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        if entry is None:
            raise StockEntryNotFoundError(StockLedger.TESTING.value, location_id, product.id)
        return self._plan(
            location_id,
            product.id,
            ledger_rules.send_back,
            self._counters(entry),
            quantity,
            result,
        )

    def return_quantity_to_outlet(
        self,
        location_id: UUID,
        product: ProductInfo,
        quantity: int,
        result: TestResult,
        *,
        actor_id: UUID,
    ) -> None:
        counters = self.check_return_quantity_to_outlet(location_id, product, quantity, result)
        entry = self._lock_entry(StockLedger.TESTING, location_id, product.id)
        self._write_counters(entry, counters, actor_id)
        self.session.flush()

        logger.info(
            "quantity_returned_from_testing",
            extra={
                "location_id": str(location_id),
                "product_id": str(product.id),
                "quantity": quantity,
                "test_result": result.value,
            },
        )


def _return_type(result: TestResult) -> TransferType:
    if result is TestResult.FAILED:
        return TransferType.TESTING_FAILED_RETURN
    return TransferType.TESTING_RETURN
