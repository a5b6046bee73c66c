"""
stock_services.bootstrap -- wire a TestingMaterialService from configuration.

Responsibility:
    Applies a StockConfig to the process: log level, database engine,
    ORM immutability listeners and (optionally) the schema.  Returns the
    facade built from the same config.

Architecture position:
    Services layer.  The only place where stock_config values reach
    stock_kernel infrastructure.

Failure modes:
    - Whatever get_active_config() raises for a missing or invalid file.
    - SQLAlchemy errors when the database cannot be reached.
"""

from __future__ import annotations

from pathlib import Path

from stock_config import StockConfig, get_active_config
from stock_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from stock_kernel.db.immutability import register_immutability_listeners
from stock_kernel.domain.clock import Clock
from stock_kernel.logging_config import configure_logging, get_logger
from stock_services.testing_material_service import TestingMaterialService

logger = get_logger("services.bootstrap")


def init_stock_system(
    config: StockConfig | None = None,
    config_path: Path | str | None = None,
    create_schema: bool = False,
    clock: Clock | None = None,
) -> TestingMaterialService:
    """
    Initialize infrastructure and return the service facade.

    Args:
        config: Already-loaded configuration.  Loaded from ``config_path``
            (or the default set) when None.
        create_schema: Create missing tables.
        clock: Time source; the system clock when None.
    """
    config = config or get_active_config(config_path)
    configure_logging(level=config.logging.level_number)

    init_engine_from_url(config.database.url, **config.database.engine_kwargs())
    register_immutability_listeners()
    if create_schema:
        create_tables()

    logger.info(
        "stock_system_initialized",
        extra={
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "schema_created": create_schema,
        },
    )
    return TestingMaterialService.from_config(
        config,
        session_factory=get_session_factory(),
        clock=clock,
    )
