"""Tier ladders.

A valid ladder partitions [0, ∞):
- tiers sorted by min_threshold, the first starting at 0
- each tier's max_threshold equals the next tier's min_threshold
- only the last tier is open (max_threshold is None)
- every tier prices with a rate or a fixed amount

Bucketing uses an inclusive lower bound: ``min <= base < max``. A base
exactly on a boundary belongs to the higher tier.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from fundops.errors import ValidationError
from fundops.models.rules import RuleTier

ZERO = Decimal("0")


def validate_ladder(tiers: Sequence[RuleTier]) -> list[str]:
    """Return ladder shape violations. Empty list means the ladder is valid."""
    errors: list[str] = []
    if not tiers:
        return ["tier ladder is empty"]

    ordered = sorted(tiers, key=lambda t: t.min_threshold)
    orders = [t.tier_order for t in tiers]
    if len(set(orders)) != len(orders):
        errors.append("duplicate tier_order values")

    if ordered[0].min_threshold != ZERO:
        errors.append(f"first tier must start at 0, got {ordered[0].min_threshold}")

    for i, tier in enumerate(ordered):
        if tier.rate is None and tier.fixed_amount is None:
            errors.append(f"tier {tier.tier_order} has neither rate nor fixed_amount")
        is_top = i == len(ordered) - 1
        if is_top:
            if tier.max_threshold is not None:
                errors.append("top tier must be open (max_threshold=None)")
            continue
        if tier.max_threshold is None:
            errors.append(f"tier {tier.tier_order} is open but is not the top tier")
            continue
        if tier.max_threshold <= tier.min_threshold:
            errors.append(f"tier {tier.tier_order} has max <= min")
        nxt = ordered[i + 1]
        if tier.max_threshold > nxt.min_threshold:
            errors.append(f"tiers {tier.tier_order} and {nxt.tier_order} overlap")
        elif tier.max_threshold < nxt.min_threshold:
            errors.append(f"gap between tiers {tier.tier_order} and {nxt.tier_order}")
    return errors


def select_tier(tiers: Sequence[RuleTier], base: Decimal) -> RuleTier:
    """Return the single tier containing ``base``.

    Raises:
        ValidationError: base is negative or the ladder has no matching tier.
    """
    if base < ZERO:
        raise ValidationError(f"Tier base must be non-negative, got {base}")
    for tier in sorted(tiers, key=lambda t: t.min_threshold):
        if base >= tier.min_threshold and (
            tier.max_threshold is None or base < tier.max_threshold
        ):
            return tier
    raise ValidationError(f"No tier covers base {base}")
