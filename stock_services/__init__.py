"""
stock_services -- Package init and public API.

Responsibility:
    The outer surface of the testing material workflow: capability checks,
    one transaction per operation, and operation-level logging around the
    kernel's workflow engine and selectors.

Architecture position:
    Services -- above stock_kernel and stock_config.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        stock_services/ -> stock_kernel/  (allowed)
        stock_services/ -> stock_config/  (allowed)
        stock_kernel/   -> stock_services/ (FORBIDDEN)
        stock_kernel/   -> stock_config/   (FORBIDDEN)
"""

from stock_services.bootstrap import init_stock_system
from stock_services.permissions import (
    MODULE,
    ActorContext,
    Capability,
    PermissionOracle,
    RolePermissionOracle,
)
from stock_services.testing_material_service import TestingMaterialService

__all__ = [
    "MODULE",
    "ActorContext",
    "Capability",
    "PermissionOracle",
    "RolePermissionOracle",
    "TestingMaterialService",
    "init_stock_system",
]
