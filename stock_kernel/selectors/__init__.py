"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.catalog_selector import CatalogSelector
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.selectors.testing_request_selector import TestingRequestSelector

__all__ = [
    "CatalogSelector",
    "StockSelector",
    "TestingRequestSelector",
]
