"""ORM models for the stock kernel."""

from stock_kernel.models.catalog import Location, Product
from stock_kernel.models.stock import SerialRecord, SerialTransferEvent, StockEntry
from stock_kernel.models.testing_request import (
    TestingRequest,
    TestingRequestLine,
    TestingRequestSerial,
)

__all__ = [
    "Location",
    "Product",
    "SerialRecord",
    "SerialTransferEvent",
    "StockEntry",
    "TestingRequest",
    "TestingRequestLine",
    "TestingRequestSerial",
]
