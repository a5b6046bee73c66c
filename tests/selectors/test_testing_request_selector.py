"""Tests for TestingRequestSelector listing, filtering and paging."""

from datetime import timedelta

import pytest

from stock_kernel.domain.dtos import PageRequest, RequestFilter, RequestLineSpec
from stock_kernel.domain.values import RequestStatus
from stock_kernel.exceptions import RequestNotFoundError
from stock_kernel.selectors.testing_request_selector import TestingRequestSelector
from tests.conftest import TEST_ACTOR_ID


@pytest.fixture
def history(session, workflow, seed, clock):
    """
    Four requests an hour apart:

        TM...0001  outlet A -> LAB-1  cancelled
        TM...0002  outlet A -> LAB-2  pending_testing
        TM...0003  outlet B -> LAB-1  under_testing
        TM...0004  outlet B -> LAB-2  pending_testing
    """
    routes = [
        (seed.outlet_a, seed.center),
        (seed.outlet_a, seed.center_2),
        (seed.outlet_b, seed.center),
        (seed.outlet_b, seed.center_2),
    ]
    created = []
    for source, destination in routes:
        created.append(
            workflow.create_request(
                source.id, destination.id, [RequestLineSpec(seed.cable.id, 1)], TEST_ACTOR_ID
            )
        )
        clock.advance(3600)
    workflow.cancel_request(created[0].id, TEST_ACTOR_ID)
    workflow.accept_request(created[2].id, TEST_ACTOR_ID)
    return created


def _numbers(page):
    return [r.request_number[-4:] for r in page.items]


class TestLookup:
    def test_get_by_number(self, session, history):
        found = TestingRequestSelector(session).get_by_number(history[1].request_number)
        assert found.id == history[1].id
        assert found.lines[0].product.code == "CB-1"

    def test_unknown_number(self, session, history):
        with pytest.raises(RequestNotFoundError):
            TestingRequestSelector(session).get_by_number("TM2401019999")


class TestListRequests:
    def test_newest_first_by_default(self, session, history):
        page = TestingRequestSelector(session).list_requests()
        assert _numbers(page) == ["0004", "0003", "0002", "0001"]
        assert page.total == 4

    def test_status_filter(self, session, history):
        page = TestingRequestSelector(session).list_requests(
            RequestFilter(statuses=(RequestStatus.PENDING_TESTING, RequestStatus.CANCELLED))
        )
        assert _numbers(page) == ["0004", "0002", "0001"]

    def test_location_filters(self, session, history, seed):
        selector = TestingRequestSelector(session)
        from_b = selector.list_requests(RequestFilter(from_location_id=seed.outlet_b.id))
        assert _numbers(from_b) == ["0004", "0003"]
        to_lab_2 = selector.list_requests(RequestFilter(to_location_id=seed.center_2.id))
        assert _numbers(to_lab_2) == ["0004", "0002"]

    def test_requested_at_range(self, session, history):
        first = history[0].requested_at
        page = TestingRequestSelector(session).list_requests(
            RequestFilter(
                requested_from=first + timedelta(hours=1),
                requested_to=first + timedelta(hours=2),
            )
        )
        assert _numbers(page) == ["0003", "0002"]

    def test_sort_by_status(self, session, history):
        page = TestingRequestSelector(session).list_requests(
            page=PageRequest(sort_by="status", descending=False)
        )
        assert [r.status for r in page.items] == [
            RequestStatus.CANCELLED,
            RequestStatus.PENDING_TESTING,
            RequestStatus.PENDING_TESTING,
            RequestStatus.UNDER_TESTING,
        ]
        assert _numbers(page)[1:3] == ["0002", "0004"]

    def test_paging(self, session, history):
        selector = TestingRequestSelector(session)
        second = selector.list_requests(page=PageRequest(page=2, limit=3))
        assert _numbers(second) == ["0001"]
        assert (second.total, second.pages, second.page) == (4, 2, 2)
        beyond = selector.list_requests(page=PageRequest(page=5, limit=3))
        assert beyond.items == ()
        assert beyond.total == 4

    def test_visibility(self, session, history, seed):
        page = TestingRequestSelector(session).list_requests(
            visible_location_ids=[seed.center.id]
        )
        assert _numbers(page) == ["0003", "0001"]

    def test_empty_visibility_sees_nothing(self, session, history):
        page = TestingRequestSelector(session).list_requests(visible_location_ids=[])
        assert page.total == 0
        assert set(page.status_counts.values()) == {0}


class TestStatusCounts:
    def test_every_status_present(self, session, history):
        counts = TestingRequestSelector(session).status_counts()
        assert counts == {
            RequestStatus.PENDING_TESTING: 2,
            RequestStatus.UNDER_TESTING: 1,
            RequestStatus.COMPLETED: 0,
            RequestStatus.CANCELLED: 1,
        }

    def test_status_filter_is_ignored(self, session, history, seed):
        counts = TestingRequestSelector(session).status_counts(
            RequestFilter(
                statuses=(RequestStatus.CANCELLED,), from_location_id=seed.outlet_a.id
            )
        )
        assert counts[RequestStatus.PENDING_TESTING] == 1
        assert counts[RequestStatus.CANCELLED] == 1
