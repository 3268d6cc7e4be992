"""Transition gate shared by the run and charge state machines.

Every transition is checked, in order, against:
1. The feature flag for the machine (disabled → Forbidden).
2. The role policy for the target state (service callers only where
   the policy allows them).
3. Idempotency: the target already holds → ConflictIdempotent.
4. The legal transition map (fail-closed → InvalidTransition).
5. Reason and separation-of-duties requirements.
"""

from __future__ import annotations

import enum
from typing import Any, Mapping, Optional

from fundops.errors import ConflictIdempotent, Forbidden, InvalidTransition, ValidationError
from fundops.policy.access import Actor, FeatureFlags
from fundops.policy.resolver import PolicyResolver, TransitionPolicy


class TransitionGate:
    """Fail-closed authorization for one state machine."""

    machine = ""
    flag = ""

    def __init__(self, resolver: PolicyResolver, transitions: Mapping[Any, frozenset]) -> None:
        self._resolver = resolver
        self._transitions = transitions

    def policy(self, target: enum.Enum) -> TransitionPolicy:
        return self._resolver.transition_policy(self.machine, target.value)

    def valid_transitions(self, current: enum.Enum) -> frozenset:
        return self._transitions.get(current, frozenset())

    def is_terminal(self, current: enum.Enum) -> bool:
        return not self.valid_transitions(current)

    def authorize_action(self, action: str, actor: Actor, flags: FeatureFlags) -> TransitionPolicy:
        """Flag and role checks for ``action`` (a target state or "created")."""
        if not flags.is_enabled(self.flag, actor):
            raise Forbidden(
                f"Feature '{self.flag}' is disabled for {actor.actor_id}",
                {"flag": self.flag},
            )

        policy = self._resolver.transition_policy(self.machine, action)
        if actor.is_service:
            if not policy.allow_service:
                raise Forbidden(f"Service callers may not perform {self.machine} → {action}")
        elif not actor.has_any(policy.roles):
            raise Forbidden(
                f"{actor.actor_id} lacks a role for {self.machine} → {action}. "
                f"Required: {', '.join(sorted(r.value for r in policy.roles))}"
            )
        return policy

    def authorize(
        self,
        entity: Any,
        entity_id: str,
        current: enum.Enum,
        target: enum.Enum,
        actor: Actor,
        flags: FeatureFlags,
        reason: str = "",
    ) -> TransitionPolicy:
        """Raise the first failing check; return the policy when allowed."""
        policy = self.authorize_action(target.value, actor, flags)

        if current == target:
            raise ConflictIdempotent(
                f"{self.machine} {entity_id} is already {target.value}",
                current_state=current.value,
            )

        if target not in self.valid_transitions(current):
            allowed = self.valid_transitions(current)
            raise InvalidTransition(
                f"Illegal {self.machine} transition: {current.value} → {target.value}. "
                f"Allowed: {', '.join(sorted(s.value for s in allowed))}"
            )

        if policy.require_reason and not reason.strip():
            raise ValidationError(
                f"{self.machine} → {target.value} requires a reason",
                {"field": "reason"},
            )

        if policy.distinct_from:
            prior: Optional[str] = getattr(entity, policy.distinct_from, None)
            if prior is not None and prior == actor.actor_id:
                raise Forbidden(
                    f"{actor.actor_id} cannot approve {self.machine} {entity_id}: "
                    f"same actor performed the previous step (self-approval blocked)"
                )
        return policy
