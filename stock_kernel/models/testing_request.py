"""
Module: stock_kernel.models.testing_request
Responsibility: ORM persistence for the testing request aggregate: the
    request header, its ordered lines, and the request's own mirror of each
    serial sent for testing.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - request_number is unique (uq_testing_request_number); generation
      retries on collision (RequestNumberService).
    - Line product and quantity never change after insert, and quantity is
      positive (ck_testing_request_line_qty_pos + immutability listener).
    - Each actor/timestamp pair is written once, by the transition that
      owns it (TestingWorkflowEngine).
    - TestingRequestSerial status and result mirror the testing-ledger
      SerialRecord after every transition.

Failure modes:
    - IntegrityError on duplicate request_number (retried by the service).
    - ImmutabilityViolationError on a line product/quantity update.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.domain.values import RequestStatus, SerialStatus, TestResult


class TestingRequest(TrackedBase):
    """
    One transfer of outlet stock to a testing center and back.

    Contract:
        Status moves only along the testing request workflow
        (stock_kernel.domain.testing_lifecycle); every move is made under a
        row lock by TestingWorkflowEngine.
    """

    __test__ = False
    __tablename__ = "testing_requests"

    __table_args__ = (
        UniqueConstraint("request_number", name="uq_testing_request_number"),
        Index("idx_testing_request_status", "status"),
        Index("idx_testing_request_from", "from_location_id"),
        Index("idx_testing_request_to", "to_location_id"),
        Index("idx_testing_request_requested_at", "requested_at"),
    )

    request_number: Mapped[str] = mapped_column(String(30), nullable=False)

    from_location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )

    to_location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )

    status: Mapped[RequestStatus] = mapped_column(
        String(20),
        nullable=False,
        default=RequestStatus.PENDING_TESTING,
    )

    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)

    accepted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    completed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    cancelled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list["TestingRequestLine"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="TestingRequestLine.line_no",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<TestingRequest {self.request_number} status={self.status}>"


class TestingRequestLine(Base):
    """A product and quantity on a testing request."""

    __test__ = False
    __tablename__ = "testing_request_lines"

    __table_args__ = (
        UniqueConstraint("request_id", "line_no", name="uq_testing_request_line_no"),
        CheckConstraint("quantity > 0", name="ck_testing_request_line_qty_pos"),
        Index("idx_testing_request_line_product", "product_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("testing_requests.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    # Immutable after insert
    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    test_result: Mapped[TestResult] = mapped_column(
        String(20),
        nullable=False,
        default=TestResult.PENDING,
    )
    test_remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    tested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    tested_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    request: Mapped[TestingRequest] = relationship(back_populates="lines")

    serials: Mapped[list["TestingRequestSerial"]] = relationship(
        back_populates="line",
        cascade="all, delete-orphan",
        order_by="TestingRequestSerial.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<TestingRequestLine {self.line_no} product={self.product_id} qty={self.quantity}>"


class TestingRequestSerial(Base):
    """The request's own copy of one serial's status and result."""

    __test__ = False
    __tablename__ = "testing_request_serials"

    __table_args__ = (
        UniqueConstraint("line_id", "serial_number", name="uq_testing_request_serial"),
    )

    line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("testing_request_lines.id"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False)
    serial_number: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[SerialStatus] = mapped_column(
        String(20),
        nullable=False,
        default=SerialStatus.PENDING_TESTING,
    )
    test_result: Mapped[TestResult] = mapped_column(
        String(20),
        nullable=False,
        default=TestResult.PENDING,
    )
    test_remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    tested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    tested_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    line: Mapped[TestingRequestLine] = relationship(back_populates="serials")
