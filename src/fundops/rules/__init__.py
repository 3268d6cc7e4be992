"""Rule evaluation — conditions, tier ladders and the variant evaluator."""

from fundops.rules.conditions import conditions_pass, evaluate_condition
from fundops.rules.evaluator import RuleEvaluator, VARIANT_HANDLERS
from fundops.rules.tiers import select_tier, validate_ladder

__all__ = [
    "RuleEvaluator",
    "VARIANT_HANDLERS",
    "conditions_pass",
    "evaluate_condition",
    "select_tier",
    "validate_ladder",
]
