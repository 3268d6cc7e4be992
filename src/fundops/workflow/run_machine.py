"""Run state machine — review, approval and export of computed runs.

    DRAFT → REVIEWED → APPROVED → EXPORTED
    DRAFT | REVIEWED | APPROVED → FAILED

Entering APPROVED freezes the run: lines, inputs and VAT snapshots no
longer change. The approver must differ from the reviewer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fundops.models.workflow import RUN_TRANSITIONS, ApprovalStep, Run, RunStatus, StepStatus
from fundops.policy.access import Actor, FeatureFlags
from fundops.policy.resolver import PolicyResolver
from fundops.workflow.gate import TransitionGate

RUNS_FLAG = "commission_runs"


class RunStateMachine(TransitionGate):
    """Applies authorized run transitions and appends approval steps.

    Usage:
        machine = RunStateMachine(resolver)
        machine.apply(run, RunStatus.REVIEWED, reviewer, flags)
        machine.apply(run, RunStatus.APPROVED, approver, flags)
    """

    machine = "run"
    flag = RUNS_FLAG

    def __init__(self, resolver: PolicyResolver) -> None:
        super().__init__(resolver, RUN_TRANSITIONS)

    def apply(
        self,
        run: Run,
        target: RunStatus,
        actor: Actor,
        flags: FeatureFlags,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> ApprovalStep:
        """Authorize and perform a transition.

        Raises:
            Forbidden, ConflictIdempotent, InvalidTransition, ValidationError
        """
        now = now or datetime.now(timezone.utc)
        policy = self.authorize(run, run.run_id, run.status, target, actor, flags, reason=comment)

        run.transition_to(target)
        if target == RunStatus.REVIEWED:
            run.reviewed_by = actor.actor_id
        elif target == RunStatus.APPROVED:
            run.approved_by = actor.actor_id
            run.frozen_utc = now
        elif target == RunStatus.EXPORTED:
            run.exported_utc = now
        elif target == RunStatus.FAILED:
            run.failure_reason = comment

        step = ApprovalStep(
            entity_id=run.run_id,
            step_name=target.value,
            approver_role=",".join(sorted(r.value for r in (actor.roles & policy.roles))) or "service",
            status=StepStatus.REJECTED if target == RunStatus.FAILED else StepStatus.APPROVED,
            actor_id=actor.actor_id,
            timestamp_utc=now,
            comment=comment,
        )
        run.steps.append(step)
        return step

    @staticmethod
    def snapshot_state(run: Run) -> dict:
        """Mutable fields, for rollback."""
        return {
            "status": run.status,
            "reviewed_by": run.reviewed_by,
            "approved_by": run.approved_by,
            "frozen_utc": run.frozen_utc,
            "exported_utc": run.exported_utc,
            "failure_reason": run.failure_reason,
            "steps": list(run.steps),
        }

    @staticmethod
    def restore_state(run: Run, state: dict) -> None:
        for key, value in state.items():
            setattr(run, key, value)
