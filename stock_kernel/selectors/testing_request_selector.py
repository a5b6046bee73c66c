"""
Module: stock_kernel.selectors.testing_request_selector
Responsibility: Read-only query access to testing requests, their lines and
    mirrored serials.  Converts ORM rows to frozen TestingRequestInfo DTOs.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - Lines are ordered by line_no and serials by position, so a request
      renders the same way every time.

Failure modes:
    - RequestNotFoundError from get() / get_by_number() for an unknown request.
"""

from collections.abc import Collection, Mapping
from uuid import UUID

from sqlalchemy import func, or_, select

from stock_kernel.domain.dtos import (
    PageRequest,
    ProductInfo,
    RequestFilter,
    RequestPage,
    RequestSerialInfo,
    TestingRequestInfo,
    TestingRequestLineInfo,
)
from stock_kernel.domain.values import RequestStatus, SerialStatus, TestResult
from stock_kernel.exceptions import RequestNotFoundError
from stock_kernel.models.testing_request import TestingRequest, TestingRequestLine
from stock_kernel.selectors.base import BaseSelector
from stock_kernel.selectors.catalog_selector import CatalogSelector

_SORT_COLUMNS = {
    "requested_at": TestingRequest.requested_at,
    "request_number": TestingRequest.request_number,
    "status": TestingRequest.status,
}


def request_line_info(line: TestingRequestLine, product: ProductInfo) -> TestingRequestLineInfo:
    return TestingRequestLineInfo(
        id=line.id,
        line_no=line.line_no,
        product=product,
        quantity=line.quantity,
        remark=line.remark,
        test_result=TestResult(line.test_result),
        test_remark=line.test_remark,
        tested_at=line.tested_at,
        tested_by_id=line.tested_by_id,
        serials=tuple(
            RequestSerialInfo(
                serial_number=s.serial_number,
                status=SerialStatus(s.status),
                test_result=TestResult(s.test_result),
                test_remark=s.test_remark,
                tested_at=s.tested_at,
                tested_by_id=s.tested_by_id,
            )
            for s in line.serials
        ),
    )


def request_info(
    request: TestingRequest, products: Mapping[UUID, ProductInfo]
) -> TestingRequestInfo:
    """Convert a request row; ``products`` must cover every line's product."""
    return TestingRequestInfo(
        id=request.id,
        request_number=request.request_number,
        from_location_id=request.from_location_id,
        to_location_id=request.to_location_id,
        status=RequestStatus(request.status),
        remark=request.remark,
        requested_by_id=request.requested_by_id,
        requested_at=request.requested_at,
        accepted_by_id=request.accepted_by_id,
        accepted_at=request.accepted_at,
        completed_by_id=request.completed_by_id,
        completed_at=request.completed_at,
        cancelled_by_id=request.cancelled_by_id,
        cancelled_at=request.cancelled_at,
        cancel_reason=request.cancel_reason,
        lines=tuple(
            request_line_info(line, products[line.product_id])
            for line in request.lines
        ),
    )


class TestingRequestSelector(BaseSelector[TestingRequest]):
    """
    Selector for testing request queries.

    Guarantees:
        - Lines and serials are eager-loaded (selectin) with the request.
        - Products are looked up in one query per page, not per line.
        - Paged results are ordered by the requested sort key with
          request_number as the tie-breaker.
    """

    __test__ = False

    def _to_dtos(self, requests: list[TestingRequest]) -> list[TestingRequestInfo]:
        product_ids = {line.product_id for r in requests for line in r.lines}
        products = CatalogSelector(self.session).get_products(product_ids)
        return [request_info(r, products) for r in requests]

    def get(self, request_id: UUID) -> TestingRequestInfo:
        request = self.session.get(TestingRequest, request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return self._to_dtos([request])[0]

    def get_by_number(self, request_number: str) -> TestingRequestInfo:
        request = self.session.execute(
            select(TestingRequest).where(TestingRequest.request_number == request_number)
        ).scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(request_number)
        return self._to_dtos([request])[0]

    def _filtered(self, stmt, flt: RequestFilter, visible_location_ids):
        if flt.from_location_id is not None:
            stmt = stmt.where(TestingRequest.from_location_id == flt.from_location_id)
        if flt.to_location_id is not None:
            stmt = stmt.where(TestingRequest.to_location_id == flt.to_location_id)
        if flt.requested_from is not None:
            stmt = stmt.where(TestingRequest.requested_at >= flt.requested_from)
        if flt.requested_to is not None:
            stmt = stmt.where(TestingRequest.requested_at <= flt.requested_to)
        if visible_location_ids is not None:
            ids = list(visible_location_ids)
            stmt = stmt.where(
                or_(
                    TestingRequest.from_location_id.in_(ids),
                    TestingRequest.to_location_id.in_(ids),
                )
            )
        return stmt

    def status_counts(
        self,
        flt: RequestFilter | None = None,
        visible_location_ids: Collection[UUID] | None = None,
    ) -> dict[RequestStatus, int]:
        """
        Per-status totals over the filtered, visible requests.

        The status part of the filter is ignored so every status is counted.
        """
        stmt = self._filtered(
            select(TestingRequest.status, func.count()).group_by(TestingRequest.status),
            flt or RequestFilter(),
            visible_location_ids,
        )
        counts = {status: 0 for status in RequestStatus}
        for status, count in self.session.execute(stmt):
            counts[RequestStatus(status)] = count
        return counts

    def list_requests(
        self,
        flt: RequestFilter | None = None,
        page: PageRequest | None = None,
        visible_location_ids: Collection[UUID] | None = None,
    ) -> RequestPage:
        """
        Filtered, sorted, paged listing.

        Args:
            flt: Status set, locations and requested-at range.
            page: Page number, size and sort.
            visible_location_ids: When given, only requests whose from or to
                location is in this set are returned.
        """
        flt = flt or RequestFilter()
        page = page or PageRequest()

        stmt = self._filtered(select(TestingRequest), flt, visible_location_ids)
        count_stmt = self._filtered(
            select(func.count()).select_from(TestingRequest), flt, visible_location_ids
        )
        if flt.statuses:
            wanted = [RequestStatus(s).value for s in flt.statuses]
            stmt = stmt.where(TestingRequest.status.in_(wanted))
            count_stmt = count_stmt.where(TestingRequest.status.in_(wanted))

        column = _SORT_COLUMNS[page.sort_by]
        if page.descending:
            stmt = stmt.order_by(column.desc(), TestingRequest.request_number.desc())
        else:
            stmt = stmt.order_by(column.asc(), TestingRequest.request_number.asc())
        stmt = stmt.offset(page.offset).limit(page.limit)

        rows = list(self.session.execute(stmt).scalars())
        return RequestPage(
            items=tuple(self._to_dtos(rows)),
            total=self.session.execute(count_stmt).scalar_one(),
            page=page.page,
            limit=page.limit,
            status_counts=self.status_counts(flt, visible_location_ids),
        )
