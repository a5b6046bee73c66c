"""
Tests for TestingWorkflowEngine against a real database.

Each test works in the rollback-only ``session``; the facade tests cover
the same transitions through committed transactions.
"""

from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import RequestLineSpec, ResultSpec
from stock_kernel.domain.values import (
    RequestStatus,
    SerialStatus,
    StockLedger,
    TestResult,
    TransferType,
)
from stock_kernel.exceptions import (
    AlreadyProcessedError,
    DuplicateSerialError,
    InsufficientStockError,
    InvalidInputError,
    LocationNotFoundError,
    ProductNotFoundError,
    RequestNotFoundError,
    SerialUnavailableError,
)
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.selectors.testing_request_selector import TestingRequestSelector
from tests.conftest import OUTLET_A_CABLES, TEST_ACTOR_ID


def _phones(seed, *serials):
    return RequestLineSpec(seed.phone.id, len(serials), serials)


def _cables(seed, quantity):
    return RequestLineSpec(seed.cable.id, quantity)


def _create(workflow, seed, *lines, outlet=None):
    return workflow.create_request(
        (outlet or seed.outlet_a).id, seed.center.id, list(lines), TEST_ACTOR_ID
    )


def _entry(session, ledger, location, product):
    return StockSelector(session).require_entry(ledger, location.id, product.id)


class TestCreateRequest:
    def test_reserves_without_drawing_down(self, session, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001", "SN-002"), _cables(seed, 3))

        assert request.status is RequestStatus.PENDING_TESTING
        assert request.request_number == "TM2401010001"
        assert [line.line_no for line in request.lines] == [1, 2]
        assert request.total_quantity == 5

        phones = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.phone)
        assert (phones.total, phones.available, phones.pending_testing) == (5, 5, 2)
        cables = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.cable)
        assert (cables.available, cables.pending_testing) == (OUTLET_A_CABLES, 3)

    def test_serials_are_held_for_the_request(self, session, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-003"))

        serial = StockSelector(session).get_serial(
            StockLedger.OUTLET, seed.outlet_a.id, seed.phone.id, "SN-003"
        )
        assert serial.status is SerialStatus.PENDING_TESTING
        assert serial.testing_request_id == request.id
        assert serial.request_number == request.request_number
        last = serial.history[-1]
        assert last.transfer_type is TransferType.OUTLET_TO_TESTING
        assert last.to_location_id == seed.center.id

        mirrored = request.lines[0].serials
        assert [(s.serial_number, s.status) for s in mirrored] == [
            ("SN-003", SerialStatus.PENDING_TESTING)
        ]

    def test_numbers_count_up(self, workflow, seed):
        first = _create(workflow, seed, _cables(seed, 1))
        second = _create(workflow, seed, _cables(seed, 1))
        assert (first.request_number, second.request_number) == (
            "TM2401010001",
            "TM2401010002",
        )

    def test_source_must_be_outlet(self, workflow, seed):
        with pytest.raises(InvalidInputError, match="not an outlet"):
            workflow.create_request(
                seed.center_2.id, seed.center.id, [_cables(seed, 1)], TEST_ACTOR_ID
            )

    def test_destination_must_be_center(self, workflow, seed):
        with pytest.raises(InvalidInputError, match="not a testing center"):
            workflow.create_request(
                seed.outlet_a.id, seed.outlet_b.id, [_cables(seed, 1)], TEST_ACTOR_ID
            )

    def test_unknown_location(self, workflow, seed):
        with pytest.raises(LocationNotFoundError):
            workflow.create_request(seed.outlet_a.id, uuid4(), [_cables(seed, 1)], TEST_ACTOR_ID)

    def test_unknown_product_reports_line(self, workflow, seed):
        with pytest.raises(ProductNotFoundError) as exc_info:
            _create(workflow, seed, _cables(seed, 1), RequestLineSpec(uuid4(), 1))
        assert exc_info.value.line_index == 1

    @pytest.mark.parametrize(
        "make_lines, message",
        [
            (lambda s: [], "at least one line"),
            (lambda s: [_cables(s, 0)], "positive integer"),
            (lambda s: [_cables(s, True)], "positive integer"),
            (lambda s: [RequestLineSpec(s.phone.id, 1, (None,))], "must be strings"),
            (lambda s: [_cables(s, 1), _cables(s, 2)], "more than one line"),
            (lambda s: [RequestLineSpec(s.phone.id, 2, ("SN-001",))], "serial"),
            (lambda s: [RequestLineSpec(s.phone.id, 2, ("SN-001", "SN-001"))], "duplicate"),
            (lambda s: [RequestLineSpec(s.phone.id, 1, ("  ",))], "blank"),
            (lambda s: [RequestLineSpec(s.cable.id, 1, ("X-1",))], "does not track serials"),
        ],
    )
    def test_invalid_lines(self, workflow, seed, make_lines, message):
        with pytest.raises(InvalidInputError, match=message):
            workflow.create_request(
                seed.outlet_a.id, seed.center.id, make_lines(seed), TEST_ACTOR_ID
            )

    def test_serial_cannot_be_reserved_twice(self, workflow, seed):
        _create(workflow, seed, _phones(seed, "SN-001"))
        with pytest.raises(SerialUnavailableError) as exc_info:
            _create(workflow, seed, _phones(seed, "SN-001", "SN-002"))
        assert exc_info.value.serial_numbers == ("SN-001",)

    def test_serial_must_be_at_the_outlet(self, workflow, seed):
        with pytest.raises(SerialUnavailableError):
            _create(workflow, seed, _phones(seed, "SN-101"))

    def test_one_bad_line_reserves_nothing(self, session, workflow, seed):
        with pytest.raises(SerialUnavailableError):
            _create(workflow, seed, _cables(seed, 2), _phones(seed, "SN-999"))

        cables = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.cable)
        assert cables.pending_testing == 0
        assert TestingRequestSelector(session).list_requests().total == 0

    def test_more_than_available(self, workflow, seed):
        with pytest.raises(InsufficientStockError) as exc_info:
            _create(workflow, seed, _cables(seed, OUTLET_A_CABLES + 1))
        assert exc_info.value.counter == "available"

    def test_logs_creation(self, workflow, seed, captured_logs):
        request = _create(workflow, seed, _cables(seed, 2))
        created = [r for r in captured_logs() if r["message"] == "testing_request_created"]
        assert created[0]["request_number"] == request.request_number
        assert created[0]["total_quantity"] == 2


class TestAcceptRequest:
    def test_moves_stock_to_center(self, session, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001", "SN-002"), _cables(seed, 4))
        accepted = workflow.accept_request(request.id, TEST_ACTOR_ID)

        assert accepted.status is RequestStatus.UNDER_TESTING
        assert accepted.accepted_by_id == TEST_ACTOR_ID
        assert accepted.accepted_at is not None

        phones = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.phone)
        assert (phones.total, phones.available, phones.pending_testing, phones.under_testing) == (
            5,
            3,
            0,
            2,
        )
        lab = _entry(session, StockLedger.TESTING, seed.center, seed.phone)
        assert (lab.total, lab.available, lab.under_testing) == (2, 2, 2)
        lab_cables = _entry(session, StockLedger.TESTING, seed.center, seed.cable)
        assert lab_cables.under_testing == 4

    def test_ten_units_request_four(self, session, workflow, seed):
        request = _create(workflow, seed, _cables(seed, 4), outlet=seed.outlet_b)
        outlet = _entry(session, StockLedger.OUTLET, seed.outlet_b, seed.cable)
        assert (outlet.available, outlet.pending_testing) == (10, 4)

        workflow.accept_request(request.id, TEST_ACTOR_ID)

        outlet = _entry(session, StockLedger.OUTLET, seed.outlet_b, seed.cable)
        assert (outlet.available, outlet.pending_testing) == (6, 0)
        lab = _entry(session, StockLedger.TESTING, seed.center, seed.cable)
        assert (lab.total, lab.available, lab.under_testing) == (4, 4, 4)

    def test_serials_arrive_under_testing(self, session, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-004"))
        accepted = workflow.accept_request(request.id, TEST_ACTOR_ID)

        selector = StockSelector(session)
        outlet_copy = selector.get_serial(
            StockLedger.OUTLET, seed.outlet_a.id, seed.phone.id, "SN-004"
        )
        lab_copy = selector.get_serial(
            StockLedger.TESTING, seed.center.id, seed.phone.id, "SN-004"
        )
        assert outlet_copy.status is SerialStatus.UNDER_TESTING
        assert outlet_copy.current_location_id == seed.center.id
        assert lab_copy.status is SerialStatus.UNDER_TESTING
        assert lab_copy.original_outlet_id == seed.outlet_a.id
        assert lab_copy.history[-1].transfer_type is TransferType.TESTING_INBOUND
        assert accepted.lines[0].serials[0].status is SerialStatus.UNDER_TESTING
        assert selector.verify_request_mirror(request.id) == []

    def test_second_accept_is_already_processed(self, workflow, seed, captured_logs):
        request = _create(workflow, seed, _cables(seed, 1))
        workflow.accept_request(request.id, TEST_ACTOR_ID)

        with pytest.raises(AlreadyProcessedError) as exc_info:
            workflow.accept_request(request.id, TEST_ACTOR_ID)
        assert exc_info.value.expected_status == "pending_testing"
        assert exc_info.value.actual_status == "under_testing"
        assert any(
            r["message"] == "testing_request_already_processed" for r in captured_logs()
        )

    def test_unknown_request(self, workflow, seed):
        with pytest.raises(RequestNotFoundError):
            workflow.accept_request(uuid4(), TEST_ACTOR_ID)

    def test_overcommitted_reservations_fail_at_accept(self, session, workflow, seed, captured_logs):
        first = _create(workflow, seed, _cables(seed, 15))
        second = _create(workflow, seed, _cables(seed, 15))
        cables = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.cable)
        assert cables.pending_testing == 30

        workflow.accept_request(first.id, TEST_ACTOR_ID)
        with pytest.raises(InsufficientStockError) as exc_info:
            workflow.accept_request(second.id, TEST_ACTOR_ID)
        assert exc_info.value.counter == "available"
        assert exc_info.value.available == OUTLET_A_CABLES - 15
        failed = [r for r in captured_logs() if r["message"] == "transition_guard_failed"]
        assert (failed[0]["guard"], failed[0]["error_code"]) == (
            "all_lines_committable",
            "INSUFFICIENT_STOCK",
        )

    def test_same_serial_from_another_outlet_is_duplicate(self, workflow, seed):
        from_a = _create(workflow, seed, _phones(seed, "SN-001"))
        workflow.accept_request(from_a.id, TEST_ACTOR_ID)
        from_b = _create(workflow, seed, _phones(seed, "SN-001"), outlet=seed.outlet_b)

        with pytest.raises(DuplicateSerialError) as exc_info:
            workflow.accept_request(from_b.id, TEST_ACTOR_ID)
        assert exc_info.value.serial_numbers == ("SN-001",)


class TestRecordResults:
    @pytest.fixture
    def accepted(self, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001", "SN-002"), _cables(seed, 3))
        return workflow.accept_request(request.id, TEST_ACTOR_ID)

    def test_serial_results_move_counters(self, session, workflow, seed, accepted):
        updated = workflow.record_results(
            accepted.id,
            [
                ResultSpec(seed.phone.id, TestResult.PASSED, "SN-001"),
                ResultSpec(seed.phone.id, TestResult.FAILED, "SN-002", "cracked screen"),
            ],
            TEST_ACTOR_ID,
        )

        assert updated.status is RequestStatus.UNDER_TESTING
        lab = _entry(session, StockLedger.TESTING, seed.center, seed.phone)
        assert (lab.under_testing, lab.passed, lab.failed, lab.total) == (0, 1, 1, 2)

        phone_line = updated.line_for(seed.phone.id)
        assert phone_line.test_result is TestResult.FAILED
        by_serial = {s.serial_number: s for s in phone_line.serials}
        assert by_serial["SN-002"].test_remark == "cracked screen"
        assert by_serial["SN-002"].status is SerialStatus.FAILED
        assert StockSelector(session).verify_request_mirror(accepted.id) == []

    def test_line_result_waits_for_every_serial(self, workflow, seed, accepted):
        updated = workflow.record_results(
            accepted.id, [ResultSpec(seed.phone.id, TestResult.PASSED, "SN-001")], TEST_ACTOR_ID
        )
        assert updated.line_for(seed.phone.id).test_result is TestResult.PENDING

    def test_inconclusive_serial_is_tested(self, session, workflow, seed, accepted):
        workflow.record_results(
            accepted.id,
            [ResultSpec(seed.phone.id, TestResult.INCONCLUSIVE, "SN-001")],
            TEST_ACTOR_ID,
        )
        lab = _entry(session, StockLedger.TESTING, seed.center, seed.phone)
        assert lab.tested == 1

    def test_quantity_result(self, session, workflow, seed, accepted):
        updated = workflow.record_results(
            accepted.id, [ResultSpec(seed.cable.id, TestResult.PASSED)], TEST_ACTOR_ID
        )
        assert updated.line_for(seed.cable.id).test_result is TestResult.PASSED
        lab = _entry(session, StockLedger.TESTING, seed.center, seed.cable)
        assert (lab.under_testing, lab.passed) == (0, 3)

    def test_quantity_line_scored_once(self, workflow, seed, accepted):
        workflow.record_results(
            accepted.id, [ResultSpec(seed.cable.id, TestResult.PASSED)], TEST_ACTOR_ID
        )
        with pytest.raises(InvalidInputError, match="already has a result"):
            workflow.record_results(
                accepted.id, [ResultSpec(seed.cable.id, TestResult.FAILED)], TEST_ACTOR_ID
            )

    def test_serial_scored_once(self, workflow, seed, accepted):
        result = [ResultSpec(seed.phone.id, TestResult.PASSED, "SN-001")]
        workflow.record_results(accepted.id, result, TEST_ACTOR_ID)
        with pytest.raises(SerialUnavailableError):
            workflow.record_results(accepted.id, result, TEST_ACTOR_ID)

    @pytest.mark.parametrize(
        "make_results, message",
        [
            (lambda s: [], "no results"),
            (lambda s: [ResultSpec(uuid4(), TestResult.PASSED)], "not on this request"),
            (lambda s: [ResultSpec(s.cable.id, TestResult.PENDING)], "pending"),
            (lambda s: [ResultSpec(s.cable.id, "broken")], "unknown test result"),
            (lambda s: [ResultSpec(s.phone.id, TestResult.PASSED, "SN-005")], "not on this request line"),
            (lambda s: [ResultSpec(s.cable.id, TestResult.PASSED, "X")], "without a serial"),
            (
                lambda s: [
                    ResultSpec(s.phone.id, TestResult.PASSED, "SN-001"),
                    ResultSpec(s.phone.id, TestResult.FAILED, "SN-001"),
                ],
                "twice",
            ),
        ],
    )
    def test_invalid_results(self, workflow, seed, accepted, make_results, message):
        with pytest.raises(InvalidInputError, match=message):
            workflow.record_results(accepted.id, make_results(seed), TEST_ACTOR_ID)

    def test_pending_request_takes_no_results(self, workflow, seed):
        request = _create(workflow, seed, _cables(seed, 1))
        with pytest.raises(AlreadyProcessedError):
            workflow.record_results(
                request.id, [ResultSpec(seed.cable.id, TestResult.PASSED)], TEST_ACTOR_ID
            )


class TestCompleteRequest:
    def _tested(self, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001", "SN-002"), _cables(seed, 3))
        workflow.accept_request(request.id, TEST_ACTOR_ID)
        workflow.record_results(
            request.id,
            [
                ResultSpec(seed.phone.id, TestResult.PASSED, "SN-001"),
                ResultSpec(seed.phone.id, TestResult.FAILED, "SN-002"),
                ResultSpec(seed.cable.id, TestResult.INCONCLUSIVE),
            ],
            TEST_ACTOR_ID,
        )
        return request

    def test_returns_everything(self, session, workflow, seed):
        request = self._tested(workflow, seed)
        completed = workflow.complete_request(request.id, TEST_ACTOR_ID)

        assert completed.status is RequestStatus.COMPLETED
        assert completed.is_terminal
        for product, total in ((seed.phone, 5), (seed.cable, OUTLET_A_CABLES)):
            outlet = _entry(session, StockLedger.OUTLET, seed.outlet_a, product)
            assert (outlet.total, outlet.available, outlet.under_testing) == (total, total, 0)
            lab = _entry(session, StockLedger.TESTING, seed.center, product)
            assert lab.counters.as_dict() == dict.fromkeys(lab.counters.as_dict(), 0)

    def test_serials_carry_results_home(self, session, workflow, seed):
        request = self._tested(workflow, seed)
        workflow.complete_request(request.id, TEST_ACTOR_ID)

        selector = StockSelector(session)
        failed = selector.get_serial(StockLedger.OUTLET, seed.outlet_a.id, seed.phone.id, "SN-002")
        assert failed.status is SerialStatus.AVAILABLE
        assert failed.test_result is TestResult.FAILED
        assert failed.testing_request_id is None
        assert failed.history[-1].transfer_type is TransferType.TESTING_FAILED_RETURN

        passed = selector.get_serial(StockLedger.OUTLET, seed.outlet_a.id, seed.phone.id, "SN-001")
        assert passed.history[-1].transfer_type is TransferType.TESTING_RETURN

        lab_copy = selector.get_serial(StockLedger.TESTING, seed.center.id, seed.phone.id, "SN-001")
        assert lab_copy.status is SerialStatus.RETURNED
        assert lab_copy.current_location_id == seed.outlet_a.id
        assert selector.verify_request_mirror(request.id) == []
        for product in (seed.phone, seed.cable):
            assert selector.reconcile_entry(StockLedger.OUTLET, seed.outlet_a.id, product.id) == []
            assert selector.reconcile_entry(StockLedger.TESTING, seed.center.id, product.id) == []

    def test_needs_every_result(self, workflow, seed, captured_logs):
        request = _create(workflow, seed, _phones(seed, "SN-001", "SN-002"))
        workflow.accept_request(request.id, TEST_ACTOR_ID)
        workflow.record_results(
            request.id, [ResultSpec(seed.phone.id, TestResult.PASSED, "SN-001")], TEST_ACTOR_ID
        )
        with pytest.raises(InvalidInputError, match="no test result"):
            workflow.complete_request(request.id, TEST_ACTOR_ID)
        failed = [r for r in captured_logs() if r["message"] == "transition_guard_failed"]
        assert failed[0]["action"] == "complete"
        assert failed[0]["guard"] == "all_results_recorded"

    def test_pending_request_cannot_complete(self, workflow, seed):
        request = _create(workflow, seed, _cables(seed, 1))
        with pytest.raises(AlreadyProcessedError):
            workflow.complete_request(request.id, TEST_ACTOR_ID)

    def test_returned_serial_can_be_tested_again(self, session, workflow, seed):
        first = self._tested(workflow, seed)
        workflow.complete_request(first.id, TEST_ACTOR_ID)

        again = _create(workflow, seed, _phones(seed, "SN-002"))
        workflow.accept_request(again.id, TEST_ACTOR_ID)

        lab_copy = StockSelector(session).get_serial(
            StockLedger.TESTING, seed.center.id, seed.phone.id, "SN-002"
        )
        assert lab_copy.status is SerialStatus.UNDER_TESTING
        assert lab_copy.test_result is TestResult.PENDING
        assert lab_copy.testing_request_id == again.id
        assert [e.sequence for e in lab_copy.history] == [1, 2, 3]


class TestCancelRequest:
    def test_releases_reservation(self, session, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001"), _cables(seed, 5))
        cancelled = workflow.cancel_request(request.id, TEST_ACTOR_ID, "wrong center")

        assert cancelled.status is RequestStatus.CANCELLED
        assert cancelled.cancel_reason == "wrong center"
        assert cancelled.lines[0].serials[0].status is SerialStatus.REJECTED

        selector = StockSelector(session)
        serial = selector.get_serial(StockLedger.OUTLET, seed.outlet_a.id, seed.phone.id, "SN-001")
        assert serial.status is SerialStatus.AVAILABLE
        assert serial.testing_request_id is None
        assert serial.history[-1].transfer_type is TransferType.TESTING_CANCELLED
        cables = _entry(session, StockLedger.OUTLET, seed.outlet_a, seed.cable)
        assert (cables.available, cables.pending_testing) == (OUTLET_A_CABLES, 0)
        assert selector.verify_request_mirror(request.id) == []

    def test_released_serial_can_be_requested_again(self, workflow, seed):
        request = _create(workflow, seed, _phones(seed, "SN-001"))
        workflow.cancel_request(request.id, TEST_ACTOR_ID)
        assert _create(workflow, seed, _phones(seed, "SN-001")).status is (
            RequestStatus.PENDING_TESTING
        )

    def test_accepted_request_cannot_be_cancelled(self, workflow, seed):
        request = _create(workflow, seed, _cables(seed, 1))
        workflow.accept_request(request.id, TEST_ACTOR_ID)
        with pytest.raises(AlreadyProcessedError) as exc_info:
            workflow.cancel_request(request.id, TEST_ACTOR_ID)
        assert exc_info.value.action == "cancel"

    def test_cancelled_request_cannot_be_accepted(self, workflow, seed):
        request = _create(workflow, seed, _cables(seed, 1))
        workflow.cancel_request(request.id, TEST_ACTOR_ID)
        with pytest.raises(AlreadyProcessedError):
            workflow.accept_request(request.id, TEST_ACTOR_ID)
