"""Core data models for the commission and settlement engine."""

from fundops.models.calculation import (
    CalculationContext,
    CalculationSettings,
    Contribution,
    EvaluationOutcome,
    EvaluationResult,
    FeeLine,
    HistoricalAggregates,
    VatSnapshot,
)
from fundops.models.credit import (
    Credit,
    CreditApplication,
    CreditReversal,
    CreditStatus,
    CreditType,
    NettingResult,
)
from fundops.models.party import (
    Agreement,
    AgreementStatus,
    Party,
    PartyRole,
    PricingMode,
    Scope,
    Track,
    VatMode,
)
from fundops.models.rules import (
    CalculationBasis,
    CommissionRule,
    ConditionOperator,
    RuleCondition,
    RuleSet,
    RuleTier,
    RuleVariant,
)
from fundops.models.workflow import (
    ApprovalStep,
    Charge,
    ChargeStatus,
    Run,
    RunStatus,
    RunTotals,
    StepStatus,
)

__all__ = [
    "Agreement",
    "AgreementStatus",
    "ApprovalStep",
    "CalculationBasis",
    "CalculationContext",
    "CalculationSettings",
    "Charge",
    "ChargeStatus",
    "CommissionRule",
    "ConditionOperator",
    "Contribution",
    "Credit",
    "CreditApplication",
    "CreditReversal",
    "CreditStatus",
    "CreditType",
    "EvaluationOutcome",
    "EvaluationResult",
    "FeeLine",
    "HistoricalAggregates",
    "NettingResult",
    "Party",
    "PartyRole",
    "PricingMode",
    "Run",
    "RunStatus",
    "RunTotals",
    "RuleCondition",
    "RuleSet",
    "RuleTier",
    "RuleVariant",
    "Scope",
    "StepStatus",
    "Track",
    "VatMode",
    "VatSnapshot",
]
