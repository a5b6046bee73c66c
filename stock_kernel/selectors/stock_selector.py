"""
Module: stock_kernel.selectors.stock_selector
Responsibility: Read-only queries over the outlet and testing ledgers:
    entry counters, serial records with their transfer history, the
    "what is under testing at this center" views, and reconciliation
    checks used by tests and operators.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - Serial listings are ordered newest first by the serial's first
      transfer, then by serial number.

Failure modes:
    - StockEntryNotFoundError from require_entry().
    - SerialNotFoundError from get_serial().
    - RequestNotFoundError from verify_request_mirror().
"""

from uuid import UUID

from sqlalchemy import func, or_, select

from stock_kernel.domain import ledger_rules
from stock_kernel.domain.dtos import (
    SerialRecordInfo,
    StockEntryInfo,
    TransferEventInfo,
    UnderTestingProductInfo,
    UnderTestingSerials,
)
from stock_kernel.domain.values import (
    RequestStatus,
    SerialStatus,
    StockLedger,
    TestResult,
    TransferType,
)
from stock_kernel.exceptions import (
    RequestNotFoundError,
    SerialNotFoundError,
    StockEntryNotFoundError,
)
from stock_kernel.models.stock import SerialRecord, SerialTransferEvent, StockEntry
from stock_kernel.models.testing_request import TestingRequest
from stock_kernel.selectors.base import BaseSelector
from stock_kernel.selectors.catalog_selector import CatalogSelector


def entry_info(entry: StockEntry) -> StockEntryInfo:
    return StockEntryInfo(
        id=entry.id,
        ledger=StockLedger(entry.ledger),
        location_id=entry.location_id,
        product_id=entry.product_id,
        total=entry.total,
        available=entry.available,
        pending_testing=entry.pending_testing,
        under_testing=entry.under_testing,
        tested=entry.tested,
        passed=entry.passed,
        failed=entry.failed,
    )


def transfer_info(event: SerialTransferEvent) -> TransferEventInfo:
    return TransferEventInfo(
        sequence=event.sequence,
        from_location_id=event.from_location_id,
        to_location_id=event.to_location_id,
        transferred_at=event.transferred_at,
        transfer_type=TransferType(event.transfer_type),
        status=SerialStatus(event.status),
        test_result=TestResult(event.test_result) if event.test_result else None,
        testing_request_id=event.testing_request_id,
    )


def serial_info(serial: SerialRecord, request_number: str | None = None) -> SerialRecordInfo:
    return SerialRecordInfo(
        serial_number=serial.serial_number,
        ledger=StockLedger(serial.ledger),
        location_id=serial.location_id,
        product_id=serial.product_id,
        status=SerialStatus(serial.status),
        current_location_id=serial.current_location_id,
        original_outlet_id=serial.original_outlet_id,
        testing_request_id=serial.testing_request_id,
        request_number=request_number,
        test_result=TestResult(serial.test_result),
        test_remark=serial.test_remark,
        tested_at=serial.tested_at,
        tested_by_id=serial.tested_by_id,
        history=tuple(transfer_info(e) for e in serial.transfers),
    )


class StockSelector(BaseSelector[StockEntry]):
    """
    Selector for ledger queries.

    Guarantees:
        - Read-only.
        - Transfer history is eager-loaded with each serial (selectin).
    """

    def _entry(self, ledger: StockLedger, location_id: UUID, product_id: UUID) -> StockEntry | None:
        return self.session.execute(
            select(StockEntry).where(
                StockEntry.ledger == ledger.value,
                StockEntry.location_id == location_id,
                StockEntry.product_id == product_id,
            )
        ).scalar_one_or_none()

    def get_entry(
        self, ledger: StockLedger, location_id: UUID, product_id: UUID
    ) -> StockEntryInfo | None:
        entry = self._entry(ledger, location_id, product_id)
        return entry_info(entry) if entry is not None else None

    def require_entry(
        self, ledger: StockLedger, location_id: UUID, product_id: UUID
    ) -> StockEntryInfo:
        entry = self.get_entry(ledger, location_id, product_id)
        if entry is None:
            raise StockEntryNotFoundError(ledger.value, location_id, product_id)
        return entry

    def list_entries(self, ledger: StockLedger, location_id: UUID) -> list[StockEntryInfo]:
        rows = self.session.execute(
            select(StockEntry)
            .where(StockEntry.ledger == ledger.value, StockEntry.location_id == location_id)
            .order_by(StockEntry.product_id)
        ).scalars()
        return [entry_info(row) for row in rows]

    def get_serial(
        self,
        ledger: StockLedger,
        location_id: UUID,
        product_id: UUID,
        serial_number: str,
    ) -> SerialRecordInfo:
        row = self.session.execute(
            select(SerialRecord, TestingRequest.request_number)
            .outerjoin(TestingRequest, SerialRecord.testing_request_id == TestingRequest.id)
            .where(
                SerialRecord.ledger == ledger.value,
                SerialRecord.location_id == location_id,
                SerialRecord.product_id == product_id,
                SerialRecord.serial_number == serial_number,
            )
        ).first()
        if row is None:
            raise SerialNotFoundError(location_id, serial_number)
        serial, request_number = row
        return serial_info(serial, request_number)

    def serial_status_counts(self, entry_id: UUID) -> dict[SerialStatus, int]:
        rows = self.session.execute(
            select(SerialRecord.status, func.count())
            .where(SerialRecord.stock_entry_id == entry_id)
            .group_by(SerialRecord.status)
        )
        return {SerialStatus(status): count for status, count in rows}

    # -------------------------------------------------------------------------
    # Testing center views
    # -------------------------------------------------------------------------

    def list_under_testing(
        self, location_ids: list[UUID] | None = None
    ) -> list[UnderTestingProductInfo]:
        """
        Testing-ledger entries with units still under test.

        Args:
            location_ids: Restrict to these centers; all centers when None.
        """
        stmt = select(StockEntry).where(
            StockEntry.ledger == StockLedger.TESTING.value,
            StockEntry.under_testing > 0,
        )
        if location_ids is not None:
            stmt = stmt.where(StockEntry.location_id.in_(list(location_ids)))
        entries = list(
            self.session.execute(
                stmt.order_by(StockEntry.location_id, StockEntry.product_id)
            ).scalars()
        )

        products = CatalogSelector(self.session).get_products(e.product_id for e in entries)
        result = []
        for entry in entries:
            product = products[entry.product_id]
            counts = self.serial_status_counts(entry.id) if product.tracks_serial else {}
            result.append(
                UnderTestingProductInfo(
                    product=product,
                    entry=entry_info(entry),
                    serial_status_counts=counts,
                )
            )
        return result

    def under_testing_serials(
        self,
        location_id: UUID,
        product_id: UUID,
        status: SerialStatus | None = SerialStatus.UNDER_TESTING,
        search: str | None = None,
    ) -> UnderTestingSerials:
        """
        Serials of one product at one center.

        Args:
            status: Only serials in this status; every status when None.
            search: Case-insensitive substring of the serial number or of
                the request number that brought the serial in.
        """
        product = CatalogSelector(self.session).get_product(product_id)
        entry = self.require_entry(StockLedger.TESTING, location_id, product_id)

        first_moved = (
            select(func.min(SerialTransferEvent.transferred_at))
            .where(SerialTransferEvent.serial_record_id == SerialRecord.id)
            .correlate(SerialRecord)
            .scalar_subquery()
        )
        stmt = (
            select(SerialRecord, TestingRequest.request_number)
            .outerjoin(TestingRequest, SerialRecord.testing_request_id == TestingRequest.id)
            .where(
                SerialRecord.ledger == StockLedger.TESTING.value,
                SerialRecord.location_id == location_id,
                SerialRecord.product_id == product_id,
            )
        )
        if status is not None:
            stmt = stmt.where(SerialRecord.status == SerialStatus(status).value)
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(SerialRecord.serial_number).like(pattern),
                    func.lower(TestingRequest.request_number).like(pattern),
                )
            )
        stmt = stmt.order_by(first_moved.desc(), SerialRecord.serial_number)

        return UnderTestingSerials(
            product=product,
            entry=entry,
            serials=tuple(
                serial_info(serial, number)
                for serial, number in self.session.execute(stmt)
            ),
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile_entry(
        self, ledger: StockLedger, location_id: UUID, product_id: UUID
    ) -> list[str]:
        """
        Every way the entry fails to reconcile: counter identities and, for
        serialized products, counters against serial statuses.
        """
        entry = self.require_entry(ledger, location_id, product_id)
        violations = ledger_rules.reconciliation_violations(entry.counters, ledger)
        product = CatalogSelector(self.session).get_product(product_id)
        if product.tracks_serial:
            violations.extend(
                ledger_rules.serial_count_violations(
                    entry.counters, ledger, self.serial_status_counts(entry.id)
                )
            )
        return violations

    def verify_request_mirror(self, request_id: UUID) -> list[str]:
        """
        Differences between a request's serial copies and the ledger serials.

        Pending requests are compared with the outlet ledger; accepted and
        completed ones with the center's ledger.  An empty list means the
        two agree.
        """
        request = self.session.get(TestingRequest, request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        status = RequestStatus(request.status)

        problems: list[str] = []
        for line in request.lines:
            if not line.serials:
                continue
            numbers = [s.serial_number for s in line.serials]
            if status in (RequestStatus.PENDING_TESTING, RequestStatus.CANCELLED):
                ledger, location_id = StockLedger.OUTLET, request.from_location_id
            else:
                ledger, location_id = StockLedger.TESTING, request.to_location_id
            records = {
                r.serial_number: r
                for r in self.session.execute(
                    select(SerialRecord).where(
                        SerialRecord.ledger == ledger.value,
                        SerialRecord.location_id == location_id,
                        SerialRecord.product_id == line.product_id,
                        SerialRecord.serial_number.in_(numbers),
                    )
                ).scalars()
            }

            for mirrored in line.serials:
                record = records.get(mirrored.serial_number)
                where = f"line {line.line_no} serial {mirrored.serial_number}"
                if record is None:
                    problems.append(f"{where}: missing from {ledger.value} ledger")
                    continue
                if status is RequestStatus.PENDING_TESTING:
                    if record.testing_request_id != request.id:
                        problems.append(f"{where}: not held for this request")
                    elif record.status != mirrored.status:
                        problems.append(
                            f"{where}: ledger {record.status} != request {mirrored.status}"
                        )
                elif status is RequestStatus.CANCELLED:
                    if record.testing_request_id == request.id:
                        problems.append(f"{where}: still held by a cancelled request")
                    if mirrored.status != SerialStatus.REJECTED:
                        problems.append(f"{where}: request copy is {mirrored.status}")
                elif record.testing_request_id == request.id:
                    # A later request may have reopened the serial; only the
                    # record still owned by this request is comparable.
                    if record.status != mirrored.status:
                        problems.append(
                            f"{where}: ledger {record.status} != request {mirrored.status}"
                        )
                    if record.test_result != mirrored.test_result:
                        problems.append(
                            f"{where}: ledger result {record.test_result} "
                            f"!= request {mirrored.test_result}"
                        )

            if len(line.serials) != line.quantity:
                problems.append(
                    f"line {line.line_no}: {len(line.serials)} serial(s) "
                    f"for quantity {line.quantity}"
                )
        return problems
