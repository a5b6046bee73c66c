"""Services for the stock kernel (write side)."""

from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.request_number_service import RequestNumberService
from stock_kernel.services.stock_ledger_service import StockLedgerService
from stock_kernel.services.testing_workflow import TestingWorkflowEngine

__all__ = [
    "CatalogService",
    "RequestNumberService",
    "StockLedgerService",
    "TestingWorkflowEngine",
]
