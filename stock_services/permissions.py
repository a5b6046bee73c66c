"""
stock_services.permissions -- capability checks at the service boundary.

Responsibility:
    Names the capabilities of the "Testing Material" permission module,
    carries the acting user (ActorContext) and answers "may this actor do
    this" through a PermissionOracle.  RolePermissionOracle is the
    config-driven implementation: roles from stock_config grant
    capabilities.

Architecture position:
    Services layer.  The kernel stays actor-agnostic; it receives actor ids
    only after this layer has allowed the call.

Invariants:
    - Capabilities are a closed enum; a role naming an unknown capability
      is a configuration error, not a silent no-op.
    - An actor with no roles has no capabilities (fail closed).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable
from uuid import UUID

from stock_config.schema import RoleDef, StockConfig

MODULE = "Testing Material"


class Capability(str, Enum):
    """Actions of the Testing Material module."""

    CREATE = "create_testing_request"
    VIEW = "view_testing_request"
    ACCEPT = "accept_testing_request"
    COMPLETE = "complete_testing"
    MANAGE_ALL = "manage_testing_all_centers"


@dataclass(frozen=True)
class ActorContext:
    """Who is calling, where they work and which roles they hold."""

    actor_id: UUID
    home_location_id: UUID | None
    roles: tuple[str, ...] = ()


@runtime_checkable
class PermissionOracle(Protocol):
    def has_capability(
        self, actor: ActorContext, module: str, capability: Capability
    ) -> bool:
        ...


class RolePermissionOracle:
    """Grants capabilities from role definitions."""

    def __init__(self, roles: Iterable[RoleDef]):
        grants: dict[str, set[tuple[str, Capability]]] = {}
        for role in roles:
            for name in role.capabilities:
                try:
                    capability = Capability(name)
                except ValueError:
                    raise ValueError(
                        f"Role {role.name!r} grants unknown capability {name!r}"
                    ) from None
                grants.setdefault(role.name, set()).add((role.module, capability))
        self._grants = {name: frozenset(g) for name, g in grants.items()}

    @classmethod
    def from_config(cls, config: StockConfig) -> RolePermissionOracle:
        return cls(config.roles)

    def has_capability(
        self, actor: ActorContext, module: str, capability: Capability
    ) -> bool:
        key = (module, Capability(capability))
        return any(key in self._grants.get(role, ()) for role in actor.roles)

    def capabilities_for(self, actor: ActorContext, module: str = MODULE) -> frozenset[Capability]:
        return frozenset(
            capability
            for role in actor.roles
            for granted_module, capability in self._grants.get(role, ())
            if granted_module == module
        )
