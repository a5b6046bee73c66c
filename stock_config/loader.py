"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen dataclasses
of ``stock_config.schema``.  The single public entry point for runtime
config is ``stock_config.get_active_config()``.

Invariants enforced
-------------------
* Required keys are never defaulted silently; a missing key raises
  ``KeyError`` and an out-of-range value raises ``ValueError``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    DatabaseConfig,
    LoggingConfig,
    PagingConfig,
    RequestNumberingConfig,
    RoleDef,
    StockConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(section: str, name: str, value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValueError(f"{section}.{name} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    defaults = DatabaseConfig()
    return DatabaseConfig(
        url=data.get("url", defaults.url),
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_positive("database", "pool_size", data.get("pool_size", defaults.pool_size)),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
        pool_pre_ping=bool(data.get("pool_pre_ping", defaults.pool_pre_ping)),
        pool_timeout=_positive(
            "database", "pool_timeout", data.get("pool_timeout", defaults.pool_timeout)
        ),
        pool_recycle=int(data.get("pool_recycle", defaults.pool_recycle)),
        sqlite_busy_timeout=_positive(
            "database",
            "sqlite_busy_timeout",
            data.get("sqlite_busy_timeout", defaults.sqlite_busy_timeout),
        ),
    )


def parse_request_numbering(data: dict[str, Any]) -> RequestNumberingConfig:
    defaults = RequestNumberingConfig()
    prefix = str(data.get("prefix", defaults.prefix))
    if not prefix.isalpha():
        raise ValueError(f"request_numbering.prefix must be letters, got {prefix!r}")
    return RequestNumberingConfig(
        prefix=prefix,
        sequence_width=_positive(
            "request_numbering",
            "sequence_width",
            data.get("sequence_width", defaults.sequence_width),
        ),
        max_attempts=_positive(
            "request_numbering",
            "max_attempts",
            data.get("max_attempts", defaults.max_attempts),
        ),
    )


def parse_paging(data: dict[str, Any]) -> PagingConfig:
    defaults = PagingConfig()
    paging = PagingConfig(
        default_limit=_positive(
            "paging", "default_limit", data.get("default_limit", defaults.default_limit)
        ),
        max_limit=_positive("paging", "max_limit", data.get("max_limit", defaults.max_limit)),
    )
    if paging.default_limit > paging.max_limit:
        raise ValueError(
            f"paging.default_limit {paging.default_limit} exceeds "
            f"max_limit {paging.max_limit}"
        )
    return paging


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    config = LoggingConfig(level=str(data.get("level", LoggingConfig.level)))
    config.level_number  # validates the level name
    return config


def parse_role(data: dict[str, Any]) -> RoleDef:
    """Parse a RoleDef; ``name``, ``module`` and ``capabilities`` are required."""
    return RoleDef(
        name=data["name"],
        module=data["module"],
        capabilities=tuple(data["capabilities"]),
    )


def parse_config(data: dict[str, Any]) -> StockConfig:
    """
    Parse a whole configuration document.

    ``config_id`` and ``version`` are required; every section falls back to
    its dataclass defaults when absent.
    """
    roles = tuple(parse_role(r) for r in data.get("roles", []))
    names = [r.name for r in roles]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate role name(s): {', '.join(duplicates)}")

    return StockConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        database=parse_database(data.get("database", {})),
        request_numbering=parse_request_numbering(data.get("request_numbering", {})),
        paging=parse_paging(data.get("paging", {})),
        logging=parse_logging(data.get("logging", {})),
        roles=roles,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
