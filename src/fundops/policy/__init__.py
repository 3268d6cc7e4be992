"""Policy — config-driven settings, roles and feature flags."""

from fundops.policy.access import Actor, FeatureFlags, FlagRule, Role, RoleResolver, StaticRoleResolver
from fundops.policy.resolver import PolicyResolver, TransitionPolicy

__all__ = [
    "Actor",
    "FeatureFlags",
    "FlagRule",
    "PolicyResolver",
    "Role",
    "RoleResolver",
    "StaticRoleResolver",
    "TransitionPolicy",
]
