"""
stock_config -- single public entrypoint for stock configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``: database settings, request numbering, paging
    limits, log level and the role -> capability grants of the
    "Testing Material" permission module.

Architecture position:
    Configuration.  This package sits above ``stock_kernel`` and below
    ``stock_services``.  The kernel MUST NEVER import from ``stock_config``;
    the service layer passes plain values down.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Deterministic identity: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested configuration file is missing.
    - ``KeyError`` / ``ValueError`` -- missing or invalid settings.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``stock_config_loaded`` log entry with the config id, version and
    checksum, tying each run to the exact configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from stock_config.loader import load_yaml_file, parse_config
from stock_config.schema import (
    DatabaseConfig,
    LoggingConfig,
    PagingConfig,
    RequestNumberingConfig,
    RoleDef,
    StockConfig,
)

_logger = logging.getLogger("stock_kernel.config")

# Default configuration set
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

# Environment override for the database URL only
DATABASE_URL_ENV = "STOCK_DATABASE_URL"


def get_active_config(config_path: Path | str | None = None) -> StockConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to
            stock_config/sets/default.yaml.

    Returns:
        A frozen StockConfig.  When ``STOCK_DATABASE_URL`` is set it
        replaces the file's database url.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        KeyError: If a required key is missing.
        ValueError: If a setting is out of range.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    data = load_yaml_file(path)

    override = os.environ.get(DATABASE_URL_ENV)
    if override:
        data = {**data, "database": {**data.get("database", {}), "url": override}}

    config = parse_config(data)

    _logger.info(
        "stock_config_loaded",
        extra={
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "role_count": len(config.roles),
            "database_url_overridden": bool(override),
        },
    )
    return config


__all__ = [
    "DATABASE_URL_ENV",
    "DatabaseConfig",
    "LoggingConfig",
    "PagingConfig",
    "RequestNumberingConfig",
    "RoleDef",
    "StockConfig",
    "get_active_config",
]
