"""
Module: stock_kernel.models.catalog
Responsibility: ORM persistence for the reference data every ledger row
    points at: locations (outlets and testing centers) and products.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - Location and product codes are unique.
    - Product.tracks_serial is fixed at catalog time; the ORM immutability
      listener rejects any later change (stock_kernel.db.immutability).

Failure modes:
    - IntegrityError on duplicate code.
    - ImmutabilityViolationError on a tracks_serial update.
"""

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase
from stock_kernel.domain.values import LocationType


class Location(TrackedBase):
    """An outlet holding sellable stock, or a center that can test it."""

    __tablename__ = "locations"

    __table_args__ = (
        UniqueConstraint("code", name="uq_location_code"),
        Index("idx_location_type", "location_type"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    location_type: Mapped[LocationType] = mapped_column(String(10), nullable=False)

    def __repr__(self) -> str:
        return f"<Location {self.code} ({self.location_type})>"


class Product(TrackedBase):
    """A catalog item; serial tracking decides how the ledgers count it."""

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("code", name="uq_product_code"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)

    # Immutable after insert
    tracks_serial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Product {self.code} serialized={self.tracks_serial}>"
