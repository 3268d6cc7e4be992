"""Policy resolver — loads engine policy from JSON config.

All tunable constants (precision, track rates, who may perform which
transition, default feature flags, the VAT table) live in ``config/``.
Code never hard-codes them; it asks the resolver.

Files:
    engine_policy.json  rounding, tie-break, track rates, transitions, flags
    vat_rates.json      VAT rate records per country
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from fundops.errors import ValidationError
from fundops.models.calculation import CalculationSettings
from fundops.models.party import Track
from fundops.policy.access import FeatureFlags, FlagRule, Role
from fundops.vat.resolver import VatTable

POLICY_FILE = "engine_policy.json"
VAT_FILE = "vat_rates.json"


@dataclass(frozen=True)
class TransitionPolicy:
    """Who may move a run or charge into a target state."""
    target: str
    roles: frozenset[Role]
    allow_service: bool = False
    require_reason: bool = False
    distinct_from: Optional[str] = None


class PolicyResolver:
    """Read-only view over the engine policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        settings = resolver.calculation_settings()
        policy = resolver.transition_policy("charge", "paid")
        flags = resolver.feature_flags()
    """

    def __init__(self, policy: dict[str, Any], vat_records: Optional[list[dict[str, Any]]] = None) -> None:
        self._policy = policy
        self._vat_records = vat_records or []

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        config_dir = Path(config_dir)
        policy = json.loads((config_dir / POLICY_FILE).read_text(encoding="utf-8"))
        vat_path = config_dir / VAT_FILE
        vat_records = None
        if vat_path.exists():
            vat_records = json.loads(vat_path.read_text(encoding="utf-8"))["rates"]
        return cls(policy, vat_records)

    @property
    def version(self) -> str:
        return str(self._policy.get("version", "0"))

    def calculation_settings(self) -> CalculationSettings:
        rounding = self._policy["rounding"]
        return CalculationSettings(
            payable_places=int(rounding["payable_places"]),
            calc_places=int(rounding["calc_places"]),
            rounding=rounding["mode"],
            tie_break=self._policy.get("tie_break", "rule_id"),
        )

    def track_rates(self) -> dict[Track, Decimal]:
        return {
            Track(name): Decimal(str(rate))
            for name, rate in self._policy["track_rates"].items()
        }

    def transition_policy(self, machine: str, target: str) -> TransitionPolicy:
        """Policy for entering ``target`` on the ``machine`` ("run" or "charge")."""
        try:
            raw = self._policy["transitions"][machine][target]
        except KeyError:
            raise ValidationError(f"No transition policy for {machine} → {target}")
        return TransitionPolicy(
            target=target,
            roles=frozenset(Role(r) for r in raw["roles"]),
            allow_service=bool(raw.get("allow_service", False)),
            require_reason=bool(raw.get("require_reason", False)),
            distinct_from=raw.get("distinct_from"),
        )

    def feature_flags(self) -> FeatureFlags:
        flags = {}
        for name, raw in self._policy.get("feature_flags", {}).items():
            flags[name] = FlagRule(
                enabled=bool(raw.get("enabled", False)),
                enabled_for_roles=frozenset(Role(r) for r in raw.get("enabled_for_roles", [])),
            )
        return FeatureFlags(flags=flags)

    def vat_table(self) -> VatTable:
        return VatTable.from_records(self._vat_records)

    def raw(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._policy))
