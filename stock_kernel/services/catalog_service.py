"""
Service layer for catalog reference data.

Creates the locations and products every ledger row points at.  Returns
LocationInfo / ProductInfo DTOs instead of ORM entities.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import LocationInfo, ProductInfo
from stock_kernel.domain.values import LocationType
from stock_kernel.exceptions import InvalidInputError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.catalog import Location, Product
from stock_kernel.selectors.catalog_selector import location_info, product_info
from stock_kernel.services.base import BaseService

logger = get_logger("services.catalog")


class CatalogService(BaseService[Product]):
    """
    Service for registering outlets, testing centers and products.

    Codes are unique; a duplicate code is rejected before the insert.
    """

    def create_location(
        self,
        code: str,
        name: str,
        location_type: LocationType,
        actor_id: UUID,
    ) -> LocationInfo:
        """
        Register an outlet or a testing center.

        Raises:
            InvalidInputError: If the code is blank or already used.
        """
        code = code.strip()
        if not code:
            raise InvalidInputError("location code is required")
        existing = self.session.execute(
            select(Location.id).where(Location.code == code)
        ).first()
        if existing is not None:
            raise InvalidInputError(f"location code {code!r} already exists")

        location = Location(
            code=code,
            name=name,
            location_type=LocationType(location_type),
            created_by_id=actor_id,
        )
        self.session.add(location)
        self.session.flush()

        logger.info(
            "location_created",
            extra={
                "location_id": str(location.id),
                "code": code,
                "location_type": LocationType(location_type).value,
            },
        )
        return location_info(location)

    def create_product(
        self,
        code: str,
        title: str,
        tracks_serial: bool,
        actor_id: UUID,
    ) -> ProductInfo:
        """
        Register a catalog product.

        ``tracks_serial`` cannot be changed afterwards.
        """
        code = code.strip()
        if not code:
            raise InvalidInputError("product code is required")
        existing = self.session.execute(
            select(Product.id).where(Product.code == code)
        ).first()
        if existing is not None:
            raise InvalidInputError(f"product code {code!r} already exists")

        product = Product(
            code=code,
            title=title,
            tracks_serial=tracks_serial,
            created_by_id=actor_id,
        )
        self.session.add(product)
        self.session.flush()

        logger.info(
            "product_created",
            extra={
                "product_id": str(product.id),
                "code": code,
                "tracks_serial": tracks_serial,
            },
        )
        return product_info(product)
