"""
Module: stock_kernel.models.stock
Responsibility: ORM persistence for the two parallel stock ledgers.
    StockEntry holds the counters for one (ledger, location, product);
    SerialRecord tracks one physical unit of a serialized product inside
    one ledger; SerialTransferEvent is that unit's append-only movement log.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - One entry per (ledger, location, product) (uq_stock_entry_key).
    - No counter below zero (ck_stock_entry_* CHECK constraints).
    - A serial number appears once per (ledger, location, product)
      (uq_serial_record_key).
    - Transfer events are append-only; only the last event's status and
      test_result may be amended when a result is recorded
      (stock_kernel.db.immutability).

Failure modes:
    - IntegrityError on a duplicate entry or serial (the services check
      first and raise DuplicateSerialError; the constraint is the backstop
      under concurrency).
    - IntegrityError from a CHECK constraint if a counter would go negative.
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
from stock_kernel.domain.values import (
    SerialStatus,
    StockLedger,
    TestResult,
    TransferType,
)

_COUNTERS = (
    "total",
    "available",
    "pending_testing",
    "under_testing",
    "tested",
    "passed",
    "failed",
)


class StockEntry(TrackedBase):
    """
    Quantity counters for one product at one location in one ledger.

    Contract:
        Mutated only by StockLedgerService, which re-checks reconciliation
        after every movement.  Outlet and testing entries for the same
        product never reference each other.
    """

    __tablename__ = "stock_entries"

    __table_args__ = (
        UniqueConstraint(
            "ledger", "location_id", "product_id", name="uq_stock_entry_key"
        ),
        Index("idx_stock_entry_location", "ledger", "location_id"),
        *(
            CheckConstraint(f"{name} >= 0", name=f"ck_stock_entry_{name}_nonneg")
            for name in _COUNTERS
        ),
    )

    ledger: Mapped[StockLedger] = mapped_column(String(10), nullable=False)

    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_testing: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    under_testing: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tested: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    passed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    serials: Mapped[list["SerialRecord"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="SerialRecord.serial_number",
    )

    def __repr__(self) -> str:
        return (
            f"<StockEntry {self.ledger} loc={self.location_id} "
            f"product={self.product_id} total={self.total}>"
        )


class SerialRecord(Base):
    """
    One serialized unit inside one ledger.

    The outlet copy lives in the outlet's ledger for the unit's whole life;
    the testing copy is created when a center accepts the unit and carries
    ``original_outlet_id`` back to where it came from.
    """

    __tablename__ = "serial_records"

    __table_args__ = (
        UniqueConstraint(
            "ledger",
            "location_id",
            "product_id",
            "serial_number",
            name="uq_serial_record_key",
        ),
        Index("idx_serial_record_entry", "stock_entry_id"),
        Index("idx_serial_record_number", "serial_number"),
        Index("idx_serial_record_request", "testing_request_id"),
    )

    stock_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_entries.id"),
        nullable=False,
    )

    # Denormalized from the owning entry so the unique key can include them
    ledger: Mapped[StockLedger] = mapped_column(String(10), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    serial_number: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[SerialStatus] = mapped_column(
        String(20),
        nullable=False,
        default=SerialStatus.AVAILABLE,
    )

    current_location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Testing copy only; never changes once set
    original_outlet_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    testing_request_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("testing_requests.id"),
        nullable=True,
    )

    test_result: Mapped[TestResult] = mapped_column(
        String(20),
        nullable=False,
        default=TestResult.PENDING,
    )
    test_remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    tested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    tested_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    entry: Mapped[StockEntry] = relationship(back_populates="serials")

    transfers: Mapped[list["SerialTransferEvent"]] = relationship(
        back_populates="serial",
        cascade="all, delete-orphan",
        order_by="SerialTransferEvent.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<SerialRecord {self.serial_number} {self.ledger} status={self.status}>"

    @property
    def last_transfer(self) -> "SerialTransferEvent | None":
        return self.transfers[-1] if self.transfers else None


class SerialTransferEvent(Base):
    """One movement of a serialized unit.  Append-only."""

    __tablename__ = "serial_transfer_events"

    __table_args__ = (
        UniqueConstraint("serial_record_id", "sequence", name="uq_serial_transfer_seq"),
    )

    serial_record_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("serial_records.id"),
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    from_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    to_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    transferred_at: Mapped[datetime] = mapped_column(nullable=False)
    transfer_type: Mapped[TransferType] = mapped_column(String(30), nullable=False)

    # Amendable on the last event when a test result is recorded
    status: Mapped[SerialStatus] = mapped_column(String(20), nullable=False)
    test_result: Mapped[TestResult | None] = mapped_column(String(20), nullable=True)

    testing_request_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    serial: Mapped[SerialRecord] = relationship(back_populates="transfers")

    def __repr__(self) -> str:
        return f"<SerialTransferEvent #{self.sequence} {self.transfer_type}>"
