"""Workflow state machines for runs and charges."""

from fundops.workflow.charge_machine import CHARGES_FLAG, ChargeStateMachine
from fundops.workflow.gate import TransitionGate
from fundops.workflow.run_machine import RUNS_FLAG, RunStateMachine

__all__ = ["CHARGES_FLAG", "ChargeStateMachine", "RUNS_FLAG", "RunStateMachine", "TransitionGate"]
