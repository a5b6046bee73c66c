"""
RequestNumberService -- human-readable testing request numbers.

Responsibility:
    Assigns ``TM`` + YYMMDD + zero-padded sequence to a new testing request
    and inserts it.  The sequence is the count of existing requests plus
    one, so two concurrent creators can compute the same number; the unique
    constraint on ``request_number`` catches that and the insert is retried
    with the next candidate.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by TestingWorkflowEngine.create_request.

Invariants enforced:
    UNIQUE_REQUEST_NUMBER -- persistence enforces uniqueness; generation is
        best effort.  Numbers are unique but not gap-free.

Failure modes:
    - RequestNumberConflictError after ``max_attempts`` collisions.
    - IntegrityError from any other constraint is re-raised untouched.
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain.request_number import (
    DEFAULT_PREFIX,
    DEFAULT_SEQUENCE_WIDTH,
    format_request_number,
)
from stock_kernel.exceptions import RequestNumberConflictError
from stock_kernel.invariants import StockInvariant
from stock_kernel.logging_config import get_logger
from stock_kernel.models.testing_request import TestingRequest
from stock_kernel.services.base import BaseService

logger = get_logger("services.request_number")


class RequestNumberService(BaseService[TestingRequest]):
    """
    Number-and-insert for testing requests.

    Contract:
        ``insert_numbered`` adds the request to the session under a
        savepoint and flushes it.  On a request-number collision only the
        savepoint is rolled back; the caller's transaction survives.

    Non-goals:
        - Does NOT produce gap-free numbers.  Cancelled or rolled-back
          requests leave holes, and retries skip candidates.
    """

    def __init__(
        self,
        session: Session,
        prefix: str = DEFAULT_PREFIX,
        width: int = DEFAULT_SEQUENCE_WIDTH,
        max_attempts: int = 5,
    ):
        super().__init__(session)
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._prefix = prefix
        self._width = width
        self._max_attempts = max_attempts

    def _existing_count(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(TestingRequest)
        ).scalar_one()

    def _number_taken(self, number: str) -> bool:
        return (
            self.session.execute(
                select(TestingRequest.id).where(TestingRequest.request_number == number)
            ).first()
            is not None
        )

    def next_candidate(self, on: datetime, attempt: int = 0) -> str:
        """Number the next request would get, ``attempt`` places further on."""
        return format_request_number(
            on,
            self._existing_count() + 1 + attempt,
            prefix=self._prefix,
            width=self._width,
        )

    def insert_numbered(self, request: TestingRequest, on: datetime) -> str:
        """
        Number ``request`` and flush it (with its lines) into the session.

        Returns:
            The request number that was assigned.
        """
        number = ""
        for attempt in range(self._max_attempts):
            number = self.next_candidate(on, attempt)
            request.request_number = number

            savepoint = self.session.begin_nested()
            try:
                self.session.add(request)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                if not self._number_taken(number):
                    raise
                logger.warning(
                    "request_number_collision_retry",
                    extra={
                        "invariant": StockInvariant.UNIQUE_REQUEST_NUMBER.value,
                        "request_number": number,
                        "attempt": attempt + 1,
                    },
                )
                continue

            logger.debug(
                "request_number_assigned",
                extra={"request_number": number, "attempt": attempt + 1},
            )
            return number

        logger.error(
            "request_number_conflict",
            extra={"request_number": number, "attempts": self._max_attempts},
        )
        raise RequestNumberConflictError(number, self._max_attempts)
