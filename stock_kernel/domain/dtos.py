"""
DTOs -- immutable data transfer objects for the stock kernel.

Responsibility:
    Input specs accepted by the workflow engine (RequestLineSpec,
    ResultSpec, RequestFilter, PageRequest) and the read models every public
    operation returns (TestingRequestInfo, StockEntryInfo, SerialRecordInfo,
    ...).  Services and selectors convert ORM rows into these at the
    boundary; callers never receive ORM entities.

Architecture position:
    Kernel > Domain -- pure, zero I/O, no ORM imports.

Failure modes:
    - InvalidInputError from RequestLineSpec on a non-string serial.
    - InvalidInputError from PageRequest on an unknown sort key or a
      non-positive page / limit.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from uuid import UUID

from stock_kernel.domain.ledger_rules import StockCounters
from stock_kernel.domain.values import (
    LocationType,
    RequestStatus,
    SerialStatus,
    StockLedger,
    TestResult,
    TransferType,
)
from stock_kernel.exceptions import InvalidInputError

# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductInfo:
    id: UUID
    code: str
    title: str
    tracks_serial: bool

    @property
    def display_name(self) -> str:
        return f"{self.code} {self.title}"


@dataclass(frozen=True)
class LocationInfo:
    id: UUID
    code: str
    name: str
    location_type: LocationType

    @property
    def is_outlet(self) -> bool:
        return self.location_type is LocationType.OUTLET

    @property
    def is_center(self) -> bool:
        return self.location_type is LocationType.CENTER


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestLineSpec:
    """One requested line: a product, a quantity, and serials when tracked."""

    product_id: UUID
    quantity: int
    serial_numbers: tuple[str, ...] = ()
    remark: str = ""

    def __post_init__(self) -> None:
        serials = tuple(self.serial_numbers)
        for serial in serials:
            if not isinstance(serial, str):
                raise InvalidInputError(
                    f"serial numbers must be strings, got {serial!r}",
                    product_id=self.product_id,
                )
        object.__setattr__(self, "serial_numbers", tuple(s.strip() for s in serials))


@dataclass(frozen=True)
class ResultSpec:
    """
    A test outcome for one serial, or for a whole non-serialized line
    when ``serial_number`` is None.
    """

    product_id: UUID
    result: TestResult
    serial_number: str | None = None
    remark: str = ""


SORT_KEYS = frozenset({"requested_at", "request_number", "status"})


@dataclass(frozen=True)
class RequestFilter:
    statuses: tuple[RequestStatus, ...] = ()
    from_location_id: UUID | None = None
    to_location_id: UUID | None = None
    requested_from: datetime | None = None
    requested_to: datetime | None = None


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    limit: int = 100
    sort_by: str = "requested_at"
    descending: bool = True

    def __post_init__(self) -> None:
        if self.page < 1:
            raise InvalidInputError(f"page must be >= 1, got {self.page}")
        if self.limit < 1:
            raise InvalidInputError(f"limit must be >= 1, got {self.limit}")
        if self.sort_by not in SORT_KEYS:
            raise InvalidInputError(
                f"cannot sort by {self.sort_by!r}; use one of {sorted(SORT_KEYS)}"
            )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# ---------------------------------------------------------------------------
# Ledger read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferEventInfo:
    sequence: int
    from_location_id: UUID | None
    to_location_id: UUID | None
    transferred_at: datetime
    transfer_type: TransferType
    status: SerialStatus
    test_result: TestResult | None
    testing_request_id: UUID | None


@dataclass(frozen=True)
class SerialRecordInfo:
    serial_number: str
    ledger: StockLedger
    location_id: UUID
    product_id: UUID
    status: SerialStatus
    current_location_id: UUID
    original_outlet_id: UUID | None
    testing_request_id: UUID | None
    request_number: str | None
    test_result: TestResult
    test_remark: str | None
    tested_at: datetime | None
    tested_by_id: UUID | None
    history: tuple[TransferEventInfo, ...] = ()

    @property
    def first_transferred_at(self) -> datetime | None:
        return self.history[0].transferred_at if self.history else None


@dataclass(frozen=True)
class StockEntryInfo:
    id: UUID
    ledger: StockLedger
    location_id: UUID
    product_id: UUID
    total: int
    available: int
    pending_testing: int
    under_testing: int
    tested: int
    passed: int
    failed: int

    @property
    def counters(self) -> StockCounters:
        return StockCounters.of(self)


@dataclass(frozen=True)
class UnderTestingProductInfo:
    """One product at a testing center with stock still in the lab."""

    product: ProductInfo
    entry: StockEntryInfo
    serial_status_counts: Mapping[SerialStatus, int] = field(
        default_factory=lambda: MappingProxyType({})
    )


@dataclass(frozen=True)
class UnderTestingSerials:
    product: ProductInfo
    entry: StockEntryInfo
    serials: tuple[SerialRecordInfo, ...]


# ---------------------------------------------------------------------------
# Testing request read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestSerialInfo:
    serial_number: str
    status: SerialStatus
    test_result: TestResult
    test_remark: str | None
    tested_at: datetime | None
    tested_by_id: UUID | None


@dataclass(frozen=True)
class TestingRequestLineInfo:
    __test__ = False

    id: UUID
    line_no: int
    product: ProductInfo
    quantity: int
    remark: str | None
    test_result: TestResult
    test_remark: str | None
    tested_at: datetime | None
    tested_by_id: UUID | None
    serials: tuple[RequestSerialInfo, ...] = ()

    @property
    def serial_numbers(self) -> tuple[str, ...]:
        return tuple(s.serial_number for s in self.serials)


@dataclass(frozen=True)
class TestingRequestInfo:
    """A testing request with its lines and mirrored serials."""

    __test__ = False

    id: UUID
    request_number: str
    from_location_id: UUID
    to_location_id: UUID
    status: RequestStatus
    remark: str | None
    requested_by_id: UUID
    requested_at: datetime
    accepted_by_id: UUID | None
    accepted_at: datetime | None
    completed_by_id: UUID | None
    completed_at: datetime | None
    cancelled_by_id: UUID | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    lines: tuple[TestingRequestLineInfo, ...] = ()

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)

    def line_for(self, product_id: UUID) -> TestingRequestLineInfo:
        for line in self.lines:
            if line.product.id == product_id:
                return line
        raise KeyError(product_id)


@dataclass(frozen=True)
class RequestPage:
    items: tuple[TestingRequestInfo, ...]
    total: int
    page: int
    limit: int
    status_counts: Mapping[RequestStatus, int]

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.total else 0
