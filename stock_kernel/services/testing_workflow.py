"""
TestingWorkflowEngine -- the testing request state machine over two ledgers.

Responsibility:
    Creates testing requests and moves them through their lifecycle,
    mutating the outlet ledger, the testing ledger and the request's own
    serial copies together:

        create_request   reserve every line at the outlet, number the request
        accept_request   commit at the outlet, receive at the center
        record_results   score serials / non-serialized lines at the center
        complete_request return everything to the outlet
        cancel_request   release the outlet reservations

Architecture position:
    Kernel > Services.  Uses StockLedgerService for every stock movement,
    RequestNumberService for numbering and the declarative lifecycle in
    ``stock_kernel.domain.testing_lifecycle`` for allowed transitions.

Invariants enforced:
    STATUS_COMPARE_AND_SWAP -- the request row is locked FOR UPDATE and its
        status compared with the action's source state before anything
        else happens; a caller that loses a race gets AlreadyProcessedError.
    ALL_OR_NOTHING -- every line is checked before any line is applied, and
        all work happens in the caller's single transaction.
    MIRROR_CONSISTENCY -- TestingRequestSerial rows are updated in the same
        step as the ledger serial they copy.

Lock order:
    request row, then outlet entries and serials by product id, then testing
    entries and serials by product id.  Every operation follows it, so two
    transitions on different requests cannot deadlock on shared stock.

Failure modes:
    - InvalidInputError for malformed lines or results.
    - LocationNotFoundError / ProductNotFoundError for unknown references.
    - RequestNotFoundError for an unknown request.
    - AlreadyProcessedError when the request is not in the action's source
      status.
    - Any ledger error (InsufficientStockError, SerialUnavailableError,
      DuplicateSerialError, SerialNotFoundError) propagates unchanged.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain import testing_lifecycle
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    ProductInfo,
    RequestLineSpec,
    ResultSpec,
    TestingRequestInfo,
)
from stock_kernel.domain.testing_lifecycle import TESTING_REQUEST_WORKFLOW
from stock_kernel.domain.values import (
    RequestStatus,
    SerialStatus,
    TestResult,
    combine_results,
)
from stock_kernel.domain.workflow import Transition
from stock_kernel.exceptions import (
    AlreadyProcessedError,
    InvalidInputError,
    RequestNotFoundError,
    StockKernelError,
)
from stock_kernel.invariants import StockInvariant
from stock_kernel.logging_config import get_logger
from stock_kernel.models.testing_request import (
    TestingRequest,
    TestingRequestLine,
    TestingRequestSerial,
)
from stock_kernel.selectors.catalog_selector import CatalogSelector
from stock_kernel.selectors.testing_request_selector import TestingRequestSelector
from stock_kernel.services.base import BaseService
from stock_kernel.services.request_number_service import RequestNumberService
from stock_kernel.services.stock_ledger_service import StockLedgerService

logger = get_logger("services.testing_workflow")


class TestingWorkflowEngine(BaseService[TestingRequest]):
    """
    Orchestrates testing request transitions.

    Contract:
        Each public method is one transition.  It flushes but never commits;
        the caller wraps it in a transaction and rolls back on any error.
        Returns a TestingRequestInfo reflecting the new state.

    Non-goals:
        - Does NOT check permissions or location membership; that is the
          service facade's job.
    """

    __test__ = False

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        numbering: RequestNumberService | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._ledger = StockLedgerService(session, self._clock)
        self._catalog = CatalogSelector(session)
        self._requests = TestingRequestSelector(session)
        self._numbering = numbering or RequestNumberService(session)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_request(self, request_id: UUID) -> TestingRequest:
        request = self.session.execute(
            select(TestingRequest)
            .where(TestingRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def _transition(self, request: TestingRequest, action: str) -> Transition:
        """Compare-and-swap check; returns the transition the action fires."""
        current = RequestStatus(request.status)
        transition = TESTING_REQUEST_WORKFLOW.find_transition(current.value, action)
        if transition is None:
            expected = testing_lifecycle.required_status(action)
            logger.warning(
                "testing_request_already_processed",
                extra={
                    "invariant": StockInvariant.STATUS_COMPARE_AND_SWAP.value,
                    "request_id": str(request.id),
                    "request_number": request.request_number,
                    "action": action,
                    "expected_status": expected.value,
                    "actual_status": current.value,
                },
            )
            raise AlreadyProcessedError(request.id, expected.value, current.value, action)
        return transition

    @contextmanager
    def _guarded(self, request: TestingRequest, transition: Transition) -> Iterator[None]:
        """Checks run under the transition's guard; a kernel error means it failed."""
        try:
            yield
        except StockKernelError as exc:
            logger.info(
                "transition_guard_failed",
                extra={
                    "request_id": str(request.id),
                    "request_number": request.request_number,
                    "action": transition.action,
                    "guard": transition.guard.name if transition.guard else None,
                    "error_code": exc.code,
                },
            )
            raise

    def _line_products(self, request: TestingRequest) -> dict[UUID, ProductInfo]:
        return self._catalog.get_products(line.product_id for line in request.lines)

    @staticmethod
    def _ordered(lines):
        return sorted(lines, key=lambda line: str(line.product_id))

    def _info(self, request: TestingRequest) -> TestingRequestInfo:
        return self._requests.get(request.id)

    # =========================================================================
    # Create
    # =========================================================================

    def _validate_lines(
        self, lines: Sequence[RequestLineSpec]
    ) -> list[tuple[int, RequestLineSpec, ProductInfo]]:
        if not lines:
            raise InvalidInputError("a testing request needs at least one line")

        seen_products: set[UUID] = set()
        validated = []
        for index, spec in enumerate(lines):
            if type(spec.quantity) is not int or spec.quantity <= 0:
                raise InvalidInputError(
                    f"quantity must be a positive integer, got {spec.quantity!r}",
                    line_index=index,
                    product_id=spec.product_id,
                )
            product = self._catalog.get_product(spec.product_id, line_index=index)
            if product.id in seen_products:
                raise InvalidInputError(
                    f"product {product.code} appears on more than one line",
                    line_index=index,
                    product_id=product.id,
                )
            seen_products.add(product.id)

            serials = spec.serial_numbers
            if product.tracks_serial:
                if any(not s for s in serials):
                    raise InvalidInputError(
                        "serial numbers cannot be blank",
                        line_index=index,
                        product_id=product.id,
                    )
                if len(serials) != spec.quantity:
                    raise InvalidInputError(
                        f"{len(serials)} serial(s) given for quantity {spec.quantity}",
                        line_index=index,
                        product_id=product.id,
                    )
                duplicates = sorted(s for s, n in Counter(serials).items() if n > 1)
                if duplicates:
                    raise InvalidInputError(
                        f"duplicate serial(s) {', '.join(duplicates)}",
                        line_index=index,
                        product_id=product.id,
                    )
            elif serials:
                raise InvalidInputError(
                    f"product {product.code} does not track serials",
                    line_index=index,
                    product_id=product.id,
                )
            validated.append((index, spec, product))
        return validated

    def create_request(
        self,
        from_location_id: UUID,
        to_location_id: UUID,
        lines: Sequence[RequestLineSpec],
        requested_by_id: UUID,
        remark: str | None = None,
    ) -> TestingRequestInfo:
        """
        Create a request in ``pending_testing`` and reserve its stock.

        ``available`` at the outlet is unchanged; ``pending_testing`` rises
        by each line's quantity and reserved serials become pending_testing.
        """
        source = self._catalog.get_location(from_location_id)
        if not source.is_outlet:
            raise InvalidInputError(f"{source.code} is not an outlet")
        destination = self._catalog.get_location(to_location_id)
        if not destination.is_center:
            raise InvalidInputError(f"{destination.code} is not a testing center")

        validated = self._validate_lines(lines)
        by_product = sorted(validated, key=lambda item: str(item[2].id))

        # Phase 1: every line must be reservable
        for _, spec, product in by_product:
            self._ledger.check_reserve_for_testing(
                from_location_id, product, spec.quantity, spec.serial_numbers
            )

        now = self._clock.now()
        request = TestingRequest(
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            status=RequestStatus.PENDING_TESTING,
            remark=remark,
            requested_by_id=requested_by_id,
            requested_at=now,
            created_by_id=requested_by_id,
        )
        for index, spec, product in validated:
            line = TestingRequestLine(
                line_no=index + 1,
                product_id=product.id,
                quantity=spec.quantity,
                remark=spec.remark or None,
                test_result=TestResult.PENDING,
            )
            for position, serial_number in enumerate(spec.serial_numbers, start=1):
                line.serials.append(
                    TestingRequestSerial(
                        position=position,
                        serial_number=serial_number,
                        status=SerialStatus.PENDING_TESTING,
                        test_result=TestResult.PENDING,
                    )
                )
            request.lines.append(line)

        self._numbering.insert_numbered(request, now)

        # Phase 2: apply
        for _, spec, product in by_product:
            self._ledger.reserve_for_testing(
                from_location_id,
                product,
                spec.quantity,
                spec.serial_numbers,
                to_location_id=to_location_id,
                request_id=request.id,
                actor_id=requested_by_id,
            )

        logger.info(
            "testing_request_created",
            extra={
                "request_id": str(request.id),
                "request_number": request.request_number,
                "from_location_id": str(from_location_id),
                "to_location_id": str(to_location_id),
                "line_count": len(validated),
                "total_quantity": sum(spec.quantity for _, spec, _ in validated),
            },
        )
        return self._info(request)

    # =========================================================================
    # Accept
    # =========================================================================

    def accept_request(self, request_id: UUID, accepted_by_id: UUID) -> TestingRequestInfo:
        """
        ``pending_testing`` -> ``under_testing``.

        Outlet ``available`` falls by each line's quantity; the center's
        entry gains it in total, available and under_testing.
        """
        request = self._lock_request(request_id)
        transition = self._transition(request, testing_lifecycle.ACCEPT)
        products = self._line_products(request)
        lines = self._ordered(request.lines)

        # Phase 1: outlet side for every line, then center side
        with self._guarded(request, transition):
            for line in lines:
                self._ledger.check_commit_to_testing(
                    request.from_location_id,
                    products[line.product_id],
                    line.quantity,
                    [s.serial_number for s in line.serials],
                    request_id=request.id,
                )
            for line in lines:
                self._ledger.check_receive_for_testing(
                    request.to_location_id,
                    products[line.product_id],
                    line.quantity,
                    [s.serial_number for s in line.serials],
                    original_outlet_id=request.from_location_id,
                )

        # Phase 2
        for line in lines:
            self._ledger.commit_to_testing(
                request.from_location_id,
                products[line.product_id],
                line.quantity,
                [s.serial_number for s in line.serials],
                to_location_id=request.to_location_id,
                request_id=request.id,
                actor_id=accepted_by_id,
            )
        for line in lines:
            self._ledger.receive_for_testing(
                request.to_location_id,
                products[line.product_id],
                line.quantity,
                [s.serial_number for s in line.serials],
                original_outlet_id=request.from_location_id,
                request_id=request.id,
                actor_id=accepted_by_id,
            )
            for mirrored in line.serials:
                mirrored.status = SerialStatus.UNDER_TESTING

        request.status = RequestStatus(transition.to_state)
        request.accepted_by_id = accepted_by_id
        request.accepted_at = self._clock.now()
        request.updated_by_id = accepted_by_id
        self.session.flush()

        logger.info(
            "testing_request_accepted",
            extra={
                "request_id": str(request.id),
                "request_number": request.request_number,
                "to_location_id": str(request.to_location_id),
            },
        )
        return self._info(request)

    # =========================================================================
    # Record results
    # =========================================================================

    def _resolve_results(
        self, request: TestingRequest, results: Sequence[ResultSpec]
    ) -> list[tuple[ResultSpec, TestingRequestLine, TestingRequestSerial | None]]:
        if not results:
            raise InvalidInputError("no results given")

        lines = {line.product_id: line for line in request.lines}
        seen: set[tuple[UUID, str | None]] = set()
        resolved = []
        for index, spec in enumerate(results):
            line = lines.get(spec.product_id)
            if line is None:
                raise InvalidInputError(
                    "product is not on this request",
                    line_index=index,
                    product_id=spec.product_id,
                )
            try:
                result = TestResult(spec.result)
            except ValueError:
                raise InvalidInputError(
                    f"unknown test result {spec.result!r}",
                    line_index=index,
                    product_id=spec.product_id,
                ) from None
            if not result.is_recorded:
                raise InvalidInputError(
                    "a test result cannot be 'pending'",
                    line_index=index,
                    product_id=spec.product_id,
                )
            key = (spec.product_id, spec.serial_number)
            if key in seen:
                raise InvalidInputError(
                    "result given twice for the same item",
                    line_index=index,
                    product_id=spec.product_id,
                )
            seen.add(key)

            if line.serials:
                mirrored = next(
                    (s for s in line.serials if s.serial_number == spec.serial_number),
                    None,
                )
                if mirrored is None:
                    raise InvalidInputError(
                        f"serial {spec.serial_number!r} is not on this request line",
                        line_index=index,
                        product_id=spec.product_id,
                    )
                resolved.append((spec, line, mirrored))
            else:
                if spec.serial_number is not None:
                    raise InvalidInputError(
                        "non-serialized lines take a result without a serial",
                        line_index=index,
                        product_id=spec.product_id,
                    )
                if TestResult(line.test_result).is_recorded:
                    raise InvalidInputError(
                        f"line {line.line_no} already has a result",
                        line_index=index,
                        product_id=spec.product_id,
                    )
                resolved.append((spec, line, None))
        return resolved

    def record_results(
        self,
        request_id: UUID,
        results: Sequence[ResultSpec],
        tested_by_id: UUID,
    ) -> TestingRequestInfo:
        """
        Record test outcomes; the request stays ``under_testing``.

        A serialized line takes its result from its serials once all are
        scored: any failure fails it, all passes pass it, anything else is
        inconclusive.
        """
        request = self._lock_request(request_id)
        transition = self._transition(request, testing_lifecycle.RECORD_RESULT)
        products = self._line_products(request)
        center = request.to_location_id

        # Phase 1
        with self._guarded(request, transition):
            resolved = sorted(
                self._resolve_results(request, results),
                key=lambda item: (str(item[1].product_id), item[0].serial_number or ""),
            )
            for spec, line, mirrored in resolved:
                product = products[line.product_id]
                if mirrored is not None:
                    self._ledger.check_record_test_result(
                        center, product, mirrored.serial_number, request_id=request.id
                    )
                else:
                    self._ledger.check_record_quantity_result(
                        center, product, line.quantity, TestResult(spec.result)
                    )

        # Phase 2
        now = self._clock.now()
        touched: dict[UUID, TestingRequestLine] = {}
        for spec, line, mirrored in resolved:
            product = products[line.product_id]
            result = TestResult(spec.result)
            remark = spec.remark or None
            if mirrored is not None:
                serial = self._ledger.record_test_result(
                    center,
                    product,
                    mirrored.serial_number,
                    result,
                    remark,
                    tested_by_id=tested_by_id,
                    request_id=request.id,
                )
                mirrored.status = SerialStatus(serial.status)
                mirrored.test_result = result
                mirrored.test_remark = remark
                mirrored.tested_at = serial.tested_at
                mirrored.tested_by_id = tested_by_id
            else:
                self._ledger.record_quantity_result(
                    center, product, line.quantity, result, tested_by_id=tested_by_id
                )
                line.test_result = result
                line.test_remark = remark
                line.tested_at = now
                line.tested_by_id = tested_by_id
            touched[line.id] = line

        for line in touched.values():
            if not line.serials:
                continue
            combined = combine_results(TestResult(s.test_result) for s in line.serials)
            if combined.is_recorded:
                line.test_result = combined
                line.tested_at = now
                line.tested_by_id = tested_by_id

        request.updated_by_id = tested_by_id
        self.session.flush()

        logger.info(
            "testing_results_recorded",
            extra={
                "request_id": str(request.id),
                "request_number": request.request_number,
                "result_count": len(resolved),
            },
        )
        return self._info(request)

    # =========================================================================
    # Complete (return to outlet)
    # =========================================================================

    def complete_request(self, request_id: UUID, completed_by_id: UUID) -> TestingRequestInfo:
        """
        ``under_testing`` -> ``completed``: every item goes back to the outlet.

        Failed items travel as testing_failed_return, the rest as
        testing_return.  Outlet ``available`` is restored.
        """
        request = self._lock_request(request_id)
        transition = self._transition(request, testing_lifecycle.COMPLETE)
        products = self._line_products(request)
        lines = self._ordered(request.lines)
        outlet, center = request.from_location_id, request.to_location_id

        # Phase 1: every result present, then outlet side, then center side
        with self._guarded(request, transition):
            for line in lines:
                if not TestResult(line.test_result).is_recorded:
                    raise InvalidInputError(
                        f"line {line.line_no} has no test result yet",
                        line_index=line.line_no - 1,
                        product_id=line.product_id,
                    )
            for line in lines:
                self._ledger.check_receive_returned(
                    outlet,
                    products[line.product_id],
                    line.quantity,
                    [s.serial_number for s in line.serials],
                    request_id=request.id,
                )
            for line in lines:
                product = products[line.product_id]
                if line.serials:
                    self._ledger.check_return_to_outlet(
                        center,
                        product,
                        [s.serial_number for s in line.serials],
                        request_id=request.id,
                    )
                else:
                    self._ledger.check_return_quantity_to_outlet(
                        center, product, line.quantity, TestResult(line.test_result)
                    )

        # Phase 2
        returned = {}
        for line in lines:
            product = products[line.product_id]
            if line.serials:
                returned[line.id] = self._ledger.return_to_outlet(
                    center,
                    product,
                    [s.serial_number for s in line.serials],
                    destination_id=outlet,
                    request_id=request.id,
                    actor_id=completed_by_id,
                )
            else:
                self._ledger.return_quantity_to_outlet(
                    center,
                    product,
                    line.quantity,
                    TestResult(line.test_result),
                    actor_id=completed_by_id,
                )
        for line in lines:
            self._ledger.receive_returned(
                outlet,
                products[line.product_id],
                line.quantity,
                [s.serial_number for s in line.serials],
                from_location_id=center,
                request_id=request.id,
                results=returned.get(line.id),
                actor_id=completed_by_id,
            )
            for mirrored in line.serials:
                mirrored.status = SerialStatus.RETURNED

        request.status = RequestStatus(transition.to_state)
        request.completed_by_id = completed_by_id
        request.completed_at = self._clock.now()
        request.updated_by_id = completed_by_id
        self.session.flush()

        logger.info(
            "testing_request_completed",
            extra={
                "request_id": str(request.id),
                "request_number": request.request_number,
                "line_results": {
                    str(line.line_no): TestResult(line.test_result).value
                    for line in request.lines
                },
            },
        )
        return self._info(request)

    # =========================================================================
    # Cancel
    # =========================================================================

    def cancel_request(
        self,
        request_id: UUID,
        cancelled_by_id: UUID,
        reason: str | None = None,
    ) -> TestingRequestInfo:
        """``pending_testing`` -> ``cancelled``; reservations are released."""
        request = self._lock_request(request_id)
        transition = self._transition(request, testing_lifecycle.CANCEL)
        products = self._line_products(request)
        lines = self._ordered(request.lines)

        with self._guarded(request, transition):
            for line in lines:
                self._ledger.check_release_reservation(
                    request.from_location_id,
                    products[line.product_id],
                    line.quantity,
                    [s.serial_number for s in line.serials],
                    request_id=request.id,
                )
        for line in lines:
            self._ledger.release_reservation(
                request.from_location_id,
                products[line.product_id],
                line.quantity,
                [s.serial_number for s in line.serials],
                request_id=request.id,
                actor_id=cancelled_by_id,
            )
            for mirrored in line.serials:
                mirrored.status = SerialStatus.REJECTED

        request.status = RequestStatus(transition.to_state)
        request.cancelled_by_id = cancelled_by_id
        request.cancelled_at = self._clock.now()
        request.cancel_reason = reason
        request.updated_by_id = cancelled_by_id
        self.session.flush()

        logger.info(
            "testing_request_cancelled",
            extra={
                "request_id": str(request.id),
                "request_number": request.request_number,
                "reason": reason,
            },
        )
        return self._info(request)
