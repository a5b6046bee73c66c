"""
StockConfig schema.

Typed, frozen view of a configuration set.  YAML files are parsed into
these types by the loader; ``get_active_config()`` hands the result to the
caller, which wires the database, numbering, paging and role grants from it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Keyword arguments for ``stock_kernel.db.engine.init_engine_from_url``."""

    url: str = "sqlite:///stock.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_pre_ping: bool = True
    pool_timeout: int = 30
    pool_recycle: int = 1800
    sqlite_busy_timeout: int = 30

    def engine_kwargs(self) -> dict:
        return {
            "echo": self.echo,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_pre_ping": self.pool_pre_ping,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "sqlite_busy_timeout": self.sqlite_busy_timeout,
        }


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    @property
    def level_number(self) -> int:
        number = logging.getLevelName(self.level.upper())
        if not isinstance(number, int):
            raise ValueError(f"Unknown log level {self.level!r}")
        return number


# ---------------------------------------------------------------------------
# Workflow settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestNumberingConfig:
    """``TM`` + YYMMDD + sequence; retried on collision."""

    prefix: str = "TM"
    sequence_width: int = 4
    max_attempts: int = 5


@dataclass(frozen=True)
class PagingConfig:
    default_limit: int = 100
    max_limit: int = 500


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleDef:
    """Capabilities a role grants inside one permission module."""

    name: str
    module: str
    capabilities: tuple[str, ...]


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockConfig:
    """A complete, validated configuration set."""

    config_id: str
    version: int
    database: DatabaseConfig
    request_numbering: RequestNumberingConfig
    paging: PagingConfig
    logging: LoggingConfig
    roles: tuple[RoleDef, ...] = ()
    checksum: str = ""

    def role(self, name: str) -> RoleDef | None:
        for role in self.roles:
            if role.name == name:
                return role
        return None
