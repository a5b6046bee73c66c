"""
Module: stock_kernel.selectors.catalog_selector
Responsibility: Catalog and location lookup for the workflow engine and the
    read side.  Answers "does this product exist, and does it track serials"
    and "is this location an outlet or a center".
Architecture position: Kernel > Selectors.

Failure modes:
    - ProductNotFoundError / LocationNotFoundError for unknown ids.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import LocationInfo, ProductInfo
from stock_kernel.domain.values import LocationType
from stock_kernel.exceptions import LocationNotFoundError, ProductNotFoundError
from stock_kernel.models.catalog import Location, Product
from stock_kernel.selectors.base import BaseSelector


def product_info(product: Product) -> ProductInfo:
    return ProductInfo(
        id=product.id,
        code=product.code,
        title=product.title,
        tracks_serial=bool(product.tracks_serial),
    )


def location_info(location: Location) -> LocationInfo:
    return LocationInfo(
        id=location.id,
        code=location.code,
        name=location.name,
        location_type=LocationType(location.location_type),
    )


class CatalogSelector(BaseSelector[Product]):
    """Read-only product and location lookup."""

    def get_product(self, product_id: UUID, line_index: int | None = None) -> ProductInfo:
        product = self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id, line_index=line_index)
        return product_info(product)

    def get_products(self, product_ids: Iterable[UUID]) -> dict[UUID, ProductInfo]:
        """Look up many products at once; missing ids are simply absent."""
        ids = list(set(product_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(Product).where(Product.id.in_(ids))
        ).scalars()
        return {row.id: product_info(row) for row in rows}

    def get_location(self, location_id: UUID) -> LocationInfo:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        return location_info(location)

    def list_locations(self, location_type: LocationType | None = None) -> list[LocationInfo]:
        stmt = select(Location).order_by(Location.code)
        if location_type is not None:
            stmt = stmt.where(Location.location_type == location_type.value)
        return [location_info(row) for row in self.session.execute(stmt).scalars()]
