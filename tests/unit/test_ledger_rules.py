"""
Tests for the pure stock counter rules (stock_kernel/domain/ledger_rules.py).

Each movement is checked on its own, then Hypothesis drives whole request
lifecycles through the rules and checks that both ledgers reconcile after
every step and return to their opening position.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from stock_kernel.domain import ledger_rules
from stock_kernel.domain.ledger_rules import (
    CounterUnderflow,
    StockCounters,
    reconciliation_violations,
    serial_count_violations,
)
from stock_kernel.domain.values import SerialStatus, StockLedger, TestResult


class TestMovements:
    def test_stock_in_raises_total_and_available(self):
        c = ledger_rules.stock_in(StockCounters(), 10)
        assert c == StockCounters(total=10, available=10)

    def test_reserve_leaves_available_untouched(self):
        c = ledger_rules.reserve(StockCounters(total=10, available=10), 4)
        assert c.available == 10
        assert c.pending_testing == 4

    def test_reserve_more_than_available_underflows(self):
        with pytest.raises(CounterUnderflow) as exc_info:
            ledger_rules.reserve(StockCounters(total=3, available=3), 4)
        assert exc_info.value.counter == "available"
        assert exc_info.value.have == 3
        assert exc_info.value.need == 4

    def test_reservations_may_exceed_available_in_total(self):
        c = StockCounters(total=10, available=10)
        c = ledger_rules.reserve(c, 6)
        c = ledger_rules.reserve(c, 6)
        assert c.pending_testing == 12
        assert reconciliation_violations(c, StockLedger.OUTLET) == []

    def test_second_commit_of_oversubscribed_stock_fails(self):
        c = StockCounters(total=10, available=10, pending_testing=12)
        c = ledger_rules.commit(c, 6)
        assert c == StockCounters(total=10, available=4, pending_testing=6, under_testing=6)
        with pytest.raises(CounterUnderflow) as exc_info:
            ledger_rules.commit(c, 6)
        assert exc_info.value.counter == "available"

    def test_release_without_reservation_underflows(self):
        with pytest.raises(CounterUnderflow) as exc_info:
            ledger_rules.release(StockCounters(total=5, available=5), 1)
        assert exc_info.value.counter == "pending_testing"

    def test_receive_at_center(self):
        c = ledger_rules.receive(StockCounters(total=2, available=2, passed=2), 3)
        assert c == StockCounters(total=5, available=5, under_testing=3, passed=2)

    @pytest.mark.parametrize(
        "result, counter",
        [
            (TestResult.PASSED, "passed"),
            (TestResult.FAILED, "failed"),
            (TestResult.INCONCLUSIVE, "tested"),
        ],
    )
    def test_record_result_moves_to_outcome_counter(self, result, counter):
        c = ledger_rules.record_result(
            StockCounters(total=3, available=3, under_testing=3), 2, result
        )
        assert c.under_testing == 1
        assert getattr(c, counter) == 2

    def test_record_pending_result_is_rejected(self):
        with pytest.raises(ValueError):
            ledger_rules.record_result(
                StockCounters(total=1, available=1, under_testing=1), 1, TestResult.PENDING
            )

    def test_send_back_takes_from_matching_outcome(self):
        c = StockCounters(total=3, available=3, passed=1, failed=2)
        c = ledger_rules.send_back(c, 2, TestResult.FAILED)
        assert c == StockCounters(total=1, available=1, passed=1)

    def test_send_back_wrong_outcome_underflows(self):
        with pytest.raises(CounterUnderflow) as exc_info:
            ledger_rules.send_back(
                StockCounters(total=1, available=1, passed=1), 1, TestResult.FAILED
            )
        assert exc_info.value.counter == "failed"

    def test_receive_returned_restores_available(self):
        c = ledger_rules.receive_returned(
            StockCounters(total=5, available=3, under_testing=2), 2
        )
        assert c == StockCounters(total=5, available=5)

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(ValueError, match="positive"):
            ledger_rules.stock_in(StockCounters(), quantity)


class TestReconciliation:
    def test_outlet_identity(self):
        c = StockCounters(total=5, available=2, under_testing=2)
        assert reconciliation_violations(c, StockLedger.OUTLET) == [
            "total 5 != available 2 + under_testing 2"
        ]

    def test_outlet_never_holds_outcomes(self):
        c = StockCounters(total=1, available=1, passed=1)
        assert reconciliation_violations(c, StockLedger.OUTLET) == ["outlet passed must be 0, is 1"]

    def test_testing_identities(self):
        c = StockCounters(total=4, available=4, under_testing=1, passed=2)
        assert reconciliation_violations(c, StockLedger.TESTING) == [
            "available 4 != under_testing + outcomes 3"
        ]

    def test_testing_has_no_pending(self):
        c = StockCounters(pending_testing=1)
        assert reconciliation_violations(c, StockLedger.TESTING) == [
            "testing pending_testing must be 0, is 1"
        ]

    def test_negative_counter_reported(self):
        c = StockCounters(total=-1, available=-1)
        assert "total is negative (-1)" in reconciliation_violations(c, StockLedger.OUTLET)

    def test_outlet_serial_counts(self):
        c = StockCounters(total=3, available=2, pending_testing=1, under_testing=1)
        counts = {
            SerialStatus.AVAILABLE: 1,
            SerialStatus.PENDING_TESTING: 1,
            SerialStatus.UNDER_TESTING: 1,
        }
        assert serial_count_violations(c, StockLedger.OUTLET, counts) == []

    def test_testing_serial_count_mismatch(self):
        c = StockCounters(total=2, available=2, under_testing=1, failed=1)
        counts = {SerialStatus.UNDER_TESTING: 2}
        assert serial_count_violations(c, StockLedger.TESTING, counts) == [
            "under_testing counter 1 != 2 serial(s)",
            "failed counter 1 != 0 serial(s)",
        ]


# =============================================================================
# Property: full lifecycles conserve stock
# =============================================================================

outcomes = st.sampled_from([TestResult.PASSED, TestResult.FAILED, TestResult.INCONCLUSIVE])

request_plans = st.lists(
    st.tuples(st.integers(min_value=1, max_value=25), outcomes, st.booleans()),
    max_size=12,
)


@given(opening=st.integers(min_value=1, max_value=200), plans=request_plans)
@settings(max_examples=200, deadline=None)
def test_request_lifecycles_conserve_stock(opening, plans):
    outlet = ledger_rules.stock_in(StockCounters(), opening)
    testing = StockCounters()

    for quantity, result, cancelled in plans:
        try:
            outlet = ledger_rules.reserve(outlet, quantity)
        except CounterUnderflow:
            assert quantity > outlet.available
            continue

        if cancelled:
            outlet = ledger_rules.release(outlet, quantity)
        else:
            outlet = ledger_rules.commit(outlet, quantity)
            testing = ledger_rules.receive(testing, quantity)
            assert reconciliation_violations(outlet, StockLedger.OUTLET) == []
            assert reconciliation_violations(testing, StockLedger.TESTING) == []

            testing = ledger_rules.record_result(testing, quantity, result)
            assert reconciliation_violations(testing, StockLedger.TESTING) == []

            testing = ledger_rules.send_back(testing, quantity, result)
            outlet = ledger_rules.receive_returned(outlet, quantity)

        assert reconciliation_violations(outlet, StockLedger.OUTLET) == []
        assert reconciliation_violations(testing, StockLedger.TESTING) == []

    assert outlet == StockCounters(total=opening, available=opening)
    assert testing == StockCounters()


@given(
    opening=st.integers(min_value=1, max_value=50),
    reservations=st.lists(st.integers(min_value=1, max_value=50), min_size=1, max_size=6),
)
def test_commits_never_overdraw_available(opening, reservations):
    """However many reservations stack up, commits stop at ``available``."""
    outlet = ledger_rules.stock_in(StockCounters(), opening)
    held = []
    for quantity in reservations:
        if quantity <= outlet.available:
            outlet = ledger_rules.reserve(outlet, quantity)
            held.append(quantity)

    committed = 0
    for quantity in held:
        try:
            outlet = ledger_rules.commit(outlet, quantity)
            committed += quantity
        except CounterUnderflow as exc:
            assert exc.counter == "available"
            outlet = ledger_rules.release(outlet, quantity)
        assert outlet.available >= 0
        assert reconciliation_violations(outlet, StockLedger.OUTLET) == []

    assert committed <= opening
    assert outlet.under_testing == committed
    assert outlet.pending_testing == 0
