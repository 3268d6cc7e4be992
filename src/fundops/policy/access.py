"""Actors, roles and feature flags.

Authentication is outside this package: callers hand in an Actor that
some identity layer has already resolved. Feature flags are immutable
values passed explicitly into each workflow call, never read from
ambient global state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol


class Role(str, enum.Enum):
    ADMIN = "admin"
    FINANCE = "finance"
    OPS = "ops"
    VIEWER = "viewer"
    SERVICE = "service"


@dataclass(frozen=True)
class Actor:
    """A resolved caller. ``is_service`` marks machine callers (API keys)."""
    actor_id: str
    roles: frozenset[Role] = frozenset()
    is_service: bool = False

    @staticmethod
    def human(actor_id: str, *roles: Role) -> Actor:
        return Actor(actor_id=actor_id, roles=frozenset(roles))

    @staticmethod
    def service(actor_id: str = "service") -> Actor:
        return Actor(actor_id=actor_id, roles=frozenset({Role.SERVICE}), is_service=True)

    def has_any(self, roles: frozenset[Role]) -> bool:
        return bool(self.roles & roles)


class RoleResolver(Protocol):
    """Maps an actor id to an Actor. Implemented by the identity layer."""

    def resolve(self, actor_id: str) -> Optional[Actor]:
        ...


class StaticRoleResolver:
    """In-memory RoleResolver for tests and the CLI."""

    def __init__(self, actors: Optional[Mapping[str, Actor]] = None) -> None:
        self._actors = dict(actors or {})

    def register(self, actor: Actor) -> None:
        self._actors[actor.actor_id] = actor

    def resolve(self, actor_id: str) -> Optional[Actor]:
        return self._actors.get(actor_id)


@dataclass(frozen=True)
class FlagRule:
    """A flag is on when enabled, and, if roles are listed, the actor holds one."""
    enabled: bool = False
    enabled_for_roles: frozenset[Role] = frozenset()


@dataclass(frozen=True)
class FeatureFlags:
    flags: Mapping[str, FlagRule] = field(default_factory=dict)

    def is_enabled(self, name: str, actor: Optional[Actor] = None) -> bool:
        rule = self.flags.get(name)
        if rule is None or not rule.enabled:
            return False
        if not rule.enabled_for_roles:
            return True
        return actor is not None and actor.has_any(rule.enabled_for_roles)

    def with_flag(self, name: str, enabled: bool, roles: frozenset[Role] = frozenset()) -> FeatureFlags:
        updated = dict(self.flags)
        updated[name] = FlagRule(enabled=enabled, enabled_for_roles=roles)
        return FeatureFlags(flags=updated)
