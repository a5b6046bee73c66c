"""
Tests for RequestNumberService: count-based candidates and the
collision retry on the unique request number.
"""

import pytest

from stock_kernel.domain.dtos import RequestLineSpec
from stock_kernel.domain.values import RequestStatus
from stock_kernel.exceptions import RequestNumberConflictError
from stock_kernel.models.testing_request import TestingRequest
from stock_kernel.services.request_number_service import RequestNumberService
from stock_kernel.services.testing_workflow import TestingWorkflowEngine
from tests.conftest import TEST_ACTOR_ID


def _plant(session, seed, clock, number):
    """Insert a bare request row holding ``number``."""
    session.add(
        TestingRequest(
            request_number=number,
            from_location_id=seed.outlet_a.id,
            to_location_id=seed.center.id,
            status=RequestStatus.CANCELLED,
            requested_by_id=TEST_ACTOR_ID,
            requested_at=clock.now(),
            created_by_id=TEST_ACTOR_ID,
        )
    )
    session.flush()


def _create(engine, seed):
    return engine.create_request(
        seed.outlet_a.id,
        seed.center.id,
        [RequestLineSpec(seed.cable.id, 1)],
        TEST_ACTOR_ID,
    )


class TestCandidates:
    def test_first_number_of_the_day(self, session, seed, clock):
        assert RequestNumberService(session).next_candidate(clock.now()) == "TM2401010001"

    def test_attempt_skips_ahead(self, session, seed, clock):
        _plant(session, seed, clock, "TM2312310001")
        numbering = RequestNumberService(session)
        assert numbering.next_candidate(clock.now(), attempt=2) == "TM2401010004"

    def test_count_is_not_per_day(self, session, seed, clock):
        _plant(session, seed, clock, "TM2312310001")
        assert RequestNumberService(session).next_candidate(clock.now()) == "TM2401010002"

    def test_custom_prefix_and_width(self, session, seed, clock):
        numbering = RequestNumberService(session, prefix="QA", width=6)
        assert numbering.next_candidate(clock.now()) == "QA240101000001"

    def test_attempts_must_be_positive(self, session):
        with pytest.raises(ValueError):
            RequestNumberService(session, max_attempts=0)


class TestCollisionRetry:
    def test_taken_number_is_skipped(self, session, seed, clock, captured_logs):
        # One existing row, so the first candidate is ...0002, which is taken.
        _plant(session, seed, clock, "TM2401010002")

        request = _create(TestingWorkflowEngine(session, clock), seed)

        assert request.request_number == "TM2401010003"
        retries = [r for r in captured_logs() if r["message"] == "request_number_collision_retry"]
        assert len(retries) == 1
        assert retries[0]["request_number"] == "TM2401010002"
        assert retries[0]["level"] == "WARNING"

    def test_conflict_after_last_attempt(self, session, seed, clock, captured_logs):
        _plant(session, seed, clock, "TM2401010002")
        engine = TestingWorkflowEngine(
            session, clock, numbering=RequestNumberService(session, max_attempts=1)
        )

        with pytest.raises(RequestNumberConflictError) as exc_info:
            _create(engine, seed)

        assert exc_info.value.code == "CONFLICT"
        assert exc_info.value.attempts == 1
        assert any(
            r["message"] == "request_number_conflict" and r["level"] == "ERROR"
            for r in captured_logs()
        )

    def test_transaction_survives_a_collision(self, session, seed, clock):
        _plant(session, seed, clock, "TM2401010002")
        engine = TestingWorkflowEngine(session, clock)

        first = _create(engine, seed)
        second = _create(engine, seed)

        assert first.request_number == "TM2401010003"
        assert second.request_number == "TM2401010004"
