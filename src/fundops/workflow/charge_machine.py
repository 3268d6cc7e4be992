"""Charge state machine.

    DRAFT → PENDING → APPROVED → PAID
    PENDING → REJECTED → DRAFT

Submission (DRAFT → PENDING) is where credits are netted; rejection
reverses that netting in full. Marking paid requires a human admin;
service callers are refused. All transitions are gated by the
``charges_engine`` flag.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fundops.models.workflow import CHARGE_TRANSITIONS, ApprovalStep, Charge, ChargeStatus, StepStatus
from fundops.policy.access import Actor, FeatureFlags
from fundops.policy.resolver import PolicyResolver
from fundops.workflow.gate import TransitionGate

CHARGES_FLAG = "charges_engine"


class ChargeStateMachine(TransitionGate):
    """Applies authorized charge transitions and appends approval steps.

    Credit netting is not done here; the service nets around the
    transition so the ledger and the status move together.
    """

    machine = "charge"
    flag = CHARGES_FLAG

    def __init__(self, resolver: PolicyResolver) -> None:
        super().__init__(resolver, CHARGE_TRANSITIONS)

    def apply(
        self,
        charge: Charge,
        target: ChargeStatus,
        actor: Actor,
        flags: FeatureFlags,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ApprovalStep:
        now = now or datetime.now(timezone.utc)
        policy = self.authorize(
            charge, charge.charge_id, charge.status, target, actor, flags, reason=reason,
        )

        charge.transition_to(target)
        if target == ChargeStatus.PENDING:
            charge.submitted_utc = now
            charge.submitted_by = actor.actor_id
        elif target == ChargeStatus.APPROVED:
            charge.approved_utc = now
            charge.approved_by = actor.actor_id
        elif target == ChargeStatus.REJECTED:
            charge.rejected_utc = now
            charge.rejected_by = actor.actor_id
            charge.reject_reason = reason
        elif target == ChargeStatus.PAID:
            charge.paid_utc = now
            charge.paid_by = actor.actor_id

        step = ApprovalStep(
            entity_id=charge.charge_id,
            step_name=target.value,
            approver_role=",".join(sorted(r.value for r in (actor.roles & policy.roles))) or "service",
            status=StepStatus.REJECTED if target == ChargeStatus.REJECTED else StepStatus.APPROVED,
            actor_id=actor.actor_id,
            timestamp_utc=now,
            comment=reason,
        )
        charge.steps.append(step)
        return step

    @staticmethod
    def snapshot_state(charge: Charge) -> dict:
        """Mutable fields, for rollback."""
        return {
            "status": charge.status,
            "credits_applied": charge.credits_applied,
            "net_amount": charge.net_amount,
            "application_ids": list(charge.application_ids),
            "reject_reason": charge.reject_reason,
            "submitted_utc": charge.submitted_utc,
            "approved_utc": charge.approved_utc,
            "rejected_utc": charge.rejected_utc,
            "paid_utc": charge.paid_utc,
            "submitted_by": charge.submitted_by,
            "approved_by": charge.approved_by,
            "rejected_by": charge.rejected_by,
            "paid_by": charge.paid_by,
            "steps": list(charge.steps),
        }

    @staticmethod
    def restore_state(charge: Charge, state: dict) -> None:
        for key, value in state.items():
            setattr(charge, key, value)
