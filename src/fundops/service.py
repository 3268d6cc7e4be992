"""FundOps service — unified facade for the commission and settlement engine.

This is the primary interface for programmatic access. It orchestrates:
- Rule evaluation (preview and run-bound)
- Run lifecycle (create, review, approve, fail, export, verify)
- Charge lifecycle (compute, submit with credit netting, approve,
  reject with reversal, mark paid, reopen)
- Agreement lifecycle (register, activate, approve, amend)
- Credit ledger registration and auditing

Every workflow action is all-or-nothing. The entity lock is taken first,
then (inside the ledger) the credit scope locks. On any failure the
in-memory entity and the ledger are restored to their pre-action state.

Audit is fail-closed: if the audit record cannot be written, the action
is rolled back. Persistence happens after audit; a persistence failure
then is reported as a warning, not undone.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional
from uuid import uuid4

from fundops.charges.compute import compute_charge, resolve_agreement
from fundops.concurrency import LockRegistry
from fundops.credits.ledger import CreditLedger
from fundops.crypto.canonical import to_canonical
from fundops.errors import (
    ConflictIdempotent,
    Forbidden,
    FundOpsError,
    NotApplicable,
    ValidationError,
)
from fundops.models.calculation import (
    CalculationContext,
    Contribution,
    FeeLine,
    HistoricalAggregates,
)
from fundops.models.credit import Credit, CreditApplication, CreditReversal
from fundops.models.money import ZERO
from fundops.models.party import Agreement, AgreementStatus, Party
from fundops.models.rules import RuleSet
from fundops.models.workflow import Charge, ChargeStatus, Run, RunStatus
from fundops.persistence.audit_log import AuditAction, AuditLog, AuditRecord, AuditSink
from fundops.persistence.store import DataStore, InMemoryStore
from fundops.policy.access import Actor, FeatureFlags, Role
from fundops.policy.resolver import PolicyResolver
from fundops.rules.evaluator import RuleEvaluator
from fundops.runs.aggregator import RunAggregator
from fundops.vat.resolver import VatResolver
from fundops.workflow.charge_machine import ChargeStateMachine
from fundops.workflow.run_machine import RunStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation.

    ``error_code`` carries the stable code of the failure
    (VALIDATION_ERROR, FORBIDDEN, NOT_FOUND, ...). Idempotent repeats are
    successes with ``data["idempotent"] = True``.
    """
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def _failure(err: FundOpsError) -> ServiceResult:
    return ServiceResult(
        success=False,
        errors=[err.message],
        data=dict(err.details),
        error_code=err.code,
    )


def _idempotent(err: ConflictIdempotent, entity_key: str, entity_id: str) -> ServiceResult:
    return ServiceResult(
        success=True,
        data={entity_key: entity_id, "status": err.current_state, "idempotent": True},
    )


class FundOpsService:
    """Unified engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = FundOpsService(resolver)

        service.register_party(party)
        service.register_agreement(agreement)
        service.publish_ruleset(ruleset)
        service.register_contribution(contribution)
        service.register_credit(credit)

        result = service.create_run(date(2025, 1, 1), date(2025, 3, 31), finance)
        run_id = result.data["run_id"]
        service.submit_run(run_id, finance)
        service.approve_run(run_id, admin)
        service.export_run(run_id, finance)

        result = service.compute_charge(contribution_id, finance)
        charge_id = result.data["charge_id"]
        service.submit_charge(charge_id, finance)
        service.approve_charge(charge_id, admin)
        service.mark_paid(charge_id, admin)

    Feature flags default to the resolver's configuration; each workflow
    call may pass its own FeatureFlags value instead.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: Optional[DataStore] = None,
        ledger: Optional[CreditLedger] = None,
        audit_log: Optional[AuditSink] = None,
        vat_resolver: Optional[VatResolver] = None,
        locks: Optional[LockRegistry] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._resolver = resolver
        self._locks = locks or LockRegistry()
        self._store = store or InMemoryStore()
        self._ledger = ledger or CreditLedger(self._locks)
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._vat = vat_resolver or VatResolver(resolver.vat_table())
        self._executor = executor
        self._flags = resolver.feature_flags()
        self._settings = resolver.calculation_settings()
        self._track_rates = resolver.track_rates()
        self._runs = RunStateMachine(resolver)
        self._charges = ChargeStateMachine(resolver)
        self._preview_evaluator = RuleEvaluator(self._vat, self._ledger, commit_credits=False)
        self._persistence_degraded = False

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def store(self) -> DataStore:
        return self._store

    @property
    def audit_log(self) -> AuditSink:
        return self._audit_log

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    def status(self) -> dict[str, Any]:
        """Summary of engine state."""
        runs: dict[str, int] = {}
        for run in self._store.runs():
            runs[run.status.value] = runs.get(run.status.value, 0) + 1
        charges: dict[str, int] = {}
        for charge in self._store.charges():
            charges[charge.status.value] = charges.get(charge.status.value, 0) + 1
        try:
            ruleset_version: Optional[str] = self._store.active_ruleset().version
        except FundOpsError:
            ruleset_version = None
        return {
            "policy_version": self._resolver.version,
            "ruleset_version": ruleset_version,
            "runs": runs,
            "charges": charges,
            "credits": len(self._ledger.credits()),
            "ledger_errors": self._ledger.verify(),
            "audit_records": self._audit_log.count if isinstance(self._audit_log, AuditLog) else None,
            "feature_flags": {
                name: self._flags.is_enabled(name) for name in sorted(self._flags.flags)
            },
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def register_party(self, party: Party) -> ServiceResult:
        self._store.put_party(party)
        return ServiceResult(success=True, data={"party_id": party.party_id})

    def register_agreement(self, agreement: Agreement) -> ServiceResult:
        """Store a draft agreement. Invariants were checked on construction."""
        if agreement.status != AgreementStatus.DRAFT:
            return _failure(ValidationError("New agreements must start as draft"))
        try:
            self._store.put_agreement(agreement)
        except FundOpsError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"agreement_id": agreement.agreement_id})

    def activate_agreement(self, agreement_id: str, actor: Actor) -> ServiceResult:
        return self._move_agreement(agreement_id, AgreementStatus.ACTIVE, actor, {Role.FINANCE, Role.ADMIN})

    def approve_agreement(self, agreement_id: str, actor: Actor) -> ServiceResult:
        return self._move_agreement(agreement_id, AgreementStatus.APPROVED, actor, {Role.ADMIN})

    def _move_agreement(
        self,
        agreement_id: str,
        target: AgreementStatus,
        actor: Actor,
        roles: set[Role],
    ) -> ServiceResult:
        if actor.is_service or not actor.has_any(frozenset(roles)):
            return _failure(_forbidden(actor, f"agreement → {target.value}"))
        with self._locks.hold(("agreement", agreement_id)):
            try:
                current = self._store.get_agreement(agreement_id)
                if current.status == target:
                    return ServiceResult(
                        success=True,
                        data={"agreement_id": agreement_id, "status": target.value, "idempotent": True},
                    )
                updated = current.transition_to(target)
            except FundOpsError as e:
                return _failure(e)
            records = []
            if target == AgreementStatus.APPROVED:
                records.append(AuditRecord.create(
                    "agreement", agreement_id, AuditAction.AGREEMENT_APPROVED, actor.actor_id,
                    {"version": updated.version},
                ))
            err = self._write_audit(records)
            if err:
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")
            warning = self._safe_persist(lambda: self._store.put_agreement(updated))
            return ServiceResult(
                success=True,
                data={"agreement_id": agreement_id, "status": target.value},
                warnings=[warning] if warning else [],
            )

    def amend_agreement(self, agreement_id: str, actor: Actor, **changes: Any) -> ServiceResult:
        """Supersede an approved agreement with a new draft version."""
        if actor.is_service or not actor.has_any(frozenset({Role.FINANCE, Role.ADMIN})):
            return _failure(_forbidden(actor, "agreement amendment"))
        with self._locks.hold(("agreement", agreement_id)):
            try:
                current = self._store.get_agreement(agreement_id)
                new_id = f"agr_{uuid4().hex[:12]}"
                superseded, amendment = current.amend(new_id, **changes)
            except FundOpsError as e:
                return _failure(e)
            except TypeError as e:
                return _failure(ValidationError(f"Invalid amendment fields: {e}"))

            err = self._write_audit([AuditRecord.create(
                "agreement", agreement_id, AuditAction.AGREEMENT_AMENDED, actor.actor_id,
                {"amendment_id": new_id, "version": amendment.version, "changes": sorted(changes)},
            )])
            if err:
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")

            def _persist() -> None:
                self._store.put_agreement(superseded)
                self._store.put_agreement(amendment)

            warning = self._safe_persist(_persist)
            return ServiceResult(
                success=True,
                data={"agreement_id": new_id, "supersedes": agreement_id, "version": amendment.version},
                warnings=[warning] if warning else [],
            )

    def register_contribution(self, contribution: Contribution) -> ServiceResult:
        try:
            self._store.put_contribution(contribution)
        except FundOpsError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"contribution_id": contribution.contribution_id})

    def publish_ruleset(self, ruleset: RuleSet) -> ServiceResult:
        self._store.put_ruleset(ruleset)
        return ServiceResult(
            success=True,
            data={"version": ruleset.version, "checksum": ruleset.checksum},
        )

    def register_credit(self, credit: Credit) -> ServiceResult:
        try:
            self._ledger.register_credit(credit)
        except FundOpsError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"credit_id": credit.credit_id})

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        contributions: Iterable[Contribution],
        context: CalculationContext,
    ) -> list[FeeLine]:
        """Preview fee lines. Credit netting is planned, never consumed."""
        results = self._preview_evaluator.evaluate_batch(
            contributions, context, executor=self._executor,
        )
        return RuleEvaluator.fee_lines(results)

    def _context(
        self,
        ruleset: RuleSet,
        aggregates: Optional[Mapping[str, HistoricalAggregates]],
        target_prefix: str,
    ) -> CalculationContext:
        return CalculationContext(
            ruleset=ruleset,
            aggregates=dict(aggregates or {}),
            settings=self._settings,
            target_prefix=target_prefix,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        period_start: date,
        period_end: date,
        actor: Actor,
        aggregates: Optional[Mapping[str, HistoricalAggregates]] = None,
        supersedes: Optional[str] = None,
        flags: Optional[FeatureFlags] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Compute a draft run over the period's contributions.

        Credit-netting rules consume credits here; the applications are
        released again if the run later fails.
        """
        flags = flags or self._flags
        now = now or datetime.now(timezone.utc)
        run_id = f"run_{uuid4().hex[:12]}"
        try:
            self._runs.authorize_action("created", actor, flags)
            if supersedes is not None:
                previous = self._store.get_run(supersedes)
                if not previous.is_frozen:
                    raise ValidationError(
                        f"Run {supersedes} is {previous.status.value}; only approved or "
                        "exported runs can be superseded"
                    )
            ruleset = self._store.active_ruleset()
        except FundOpsError as e:
            return _failure(e)

        evaluator = RuleEvaluator(self._vat, self._ledger, commit_credits=True)
        aggregator = RunAggregator(evaluator)
        prefix = f"{run_id}:"

        def _rollback() -> None:
            self._ledger.retract(self._run_applications(prefix))

        with self._locks.hold(("run", run_id)):
            try:
                run = aggregator.build(
                    run_id,
                    period_start,
                    period_end,
                    self._store.contributions(),
                    self._context(ruleset, aggregates, run_id),
                    created_by=actor.actor_id,
                    supersedes=supersedes,
                    executor=self._executor,
                    now=now,
                )
            except FundOpsError as e:
                _rollback()
                return _failure(e)
            except Exception:
                _rollback()
                self._record_internal_failure("run", run_id, "create_run", actor, now)
                raise

            records = [AuditRecord.create(
                "run", run_id, AuditAction.RUN_CREATED, actor.actor_id,
                {
                    "run_hash": run.run_hash,
                    "ruleset_version": run.ruleset_version,
                    "line_count": run.totals.line_count,
                    "supersedes": supersedes,
                },
                timestamp_utc=now,
            )]
            records.extend(self._application_records(self._run_applications(prefix), actor, now))
            err = self._write_audit(records)
            if err:
                _rollback()
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")

            warning = self._safe_persist(lambda: self._store.put_run(run))
            return ServiceResult(
                success=True,
                data={
                    "run_id": run_id,
                    "status": run.status.value,
                    "run_hash": run.run_hash,
                    "line_count": run.totals.line_count,
                    "total_payable": str(run.totals.total_payable),
                },
                warnings=[warning] if warning else [],
            )

    def submit_run(self, run_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                   comment: str = "", now: Optional[datetime] = None) -> ServiceResult:
        """Mark a draft run reviewed."""
        return self._transition_run(run_id, RunStatus.REVIEWED, actor, flags, comment, now)

    def approve_run(self, run_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                    comment: str = "", now: Optional[datetime] = None) -> ServiceResult:
        """Approve a reviewed run. The reviewer cannot approve."""
        return self._transition_run(run_id, RunStatus.APPROVED, actor, flags, comment, now)

    def reject_run(self, run_id: str, actor: Actor, comment: str,
                   flags: Optional[FeatureFlags] = None, now: Optional[datetime] = None) -> ServiceResult:
        """Fail a run and release every credit its netting consumed."""
        return self._transition_run(run_id, RunStatus.FAILED, actor, flags, comment, now)

    def export_run(self, run_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                   now: Optional[datetime] = None) -> ServiceResult:
        """Export an approved run; returns its rows."""
        result = self._transition_run(run_id, RunStatus.EXPORTED, actor, flags, "", now)
        if result.success:
            run = self._store.get_run(run_id)
            data = dict(result.data)
            data["rows"] = RunAggregator.export_rows(run)
            return ServiceResult(success=True, data=data, warnings=result.warnings)
        return result

    def _transition_run(
        self,
        run_id: str,
        target: RunStatus,
        actor: Actor,
        flags: Optional[FeatureFlags],
        comment: str,
        now: Optional[datetime],
    ) -> ServiceResult:
        flags = flags or self._flags
        now = now or datetime.now(timezone.utc)
        with self._locks.hold(("run", run_id)):
            try:
                run = self._store.get_run(run_id)
            except FundOpsError as e:
                return _failure(e)

            prior = RunStateMachine.snapshot_state(run)
            reversals: list[CreditReversal] = []

            def _rollback() -> None:
                RunStateMachine.restore_state(run, prior)
                self._restore_reversals(reversals)

            try:
                self._runs.apply(run, target, actor, flags, comment=comment, now=now)
                if target == RunStatus.FAILED:
                    for target_id in self._ledger.targets_with_prefix(f"{run_id}:"):
                        reversals.extend(self._ledger.reverse_target(target_id, reason=comment, now=now))
            except ConflictIdempotent as e:
                return _idempotent(e, "run_id", run_id)
            except FundOpsError as e:
                _rollback()
                return _failure(e)
            except Exception:
                _rollback()
                self._record_internal_failure("run", run_id, f"run.{target.value}", actor, now)
                raise

            action = {
                RunStatus.REVIEWED: AuditAction.RUN_REVIEWED,
                RunStatus.APPROVED: AuditAction.RUN_APPROVED,
                RunStatus.EXPORTED: AuditAction.RUN_EXPORTED,
                RunStatus.FAILED: AuditAction.RUN_FAILED,
            }[target]
            records = [AuditRecord.create(
                "run", run_id, action, actor.actor_id,
                {"from": prior["status"].value, "to": target.value, "comment": comment, "run_hash": run.run_hash},
                timestamp_utc=now,
            )]
            records.extend(self._reversal_records(reversals, actor, now))
            err = self._write_audit(records)
            if err:
                _rollback()
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")

            logger.info("Run %s → %s by %s", run_id, target.value, actor.actor_id)
            warning = self._safe_persist(lambda: self._store.put_run(run))
            return ServiceResult(
                success=True,
                data={"run_id": run_id, "status": run.status.value},
                warnings=[warning] if warning else [],
            )

    def get_run_detail(self, run_id: str) -> ServiceResult:
        """Hash, inputs, outputs and approvals of a run, with hash verification."""
        try:
            run = self._store.get_run(run_id)
        except FundOpsError as e:
            return _failure(e)
        problems = RunAggregator.verify(run)
        return ServiceResult(
            success=True,
            data={
                "run_id": run.run_id,
                "status": run.status.value,
                "period_start": run.period_start.isoformat(),
                "period_end": run.period_end.isoformat(),
                "hash": run.run_hash,
                "hash_verified": not problems,
                "ruleset_version": run.ruleset_version,
                "ruleset_checksum": run.ruleset_checksum,
                "inputs": [to_canonical(c.hash_input()) for c in run.inputs],
                "aggregates": to_canonical(run.aggregates),
                "outputs": [to_canonical(line) for line in run.lines],
                "results": [
                    {
                        "contribution_id": r.contribution_id,
                        "rule_id": r.rule_id,
                        "outcome": r.outcome.value,
                        "reason": r.reason,
                        "error_code": r.error_code,
                    }
                    for r in run.results
                ],
                "totals": to_canonical(run.totals),
                "scope_breakdown": to_canonical(run.scope_breakdown),
                "approvals": [to_canonical(s) for s in run.steps],
                "supersedes": run.supersedes,
            },
            warnings=problems,
        )

    def verify_run(self, run_id: str) -> ServiceResult:
        """Recompute the run's hash, rule checksums and totals."""
        try:
            run = self._store.get_run(run_id)
        except FundOpsError as e:
            return _failure(e)
        problems = RunAggregator.verify(run)
        return ServiceResult(
            success=not problems,
            errors=problems,
            data={"run_id": run_id, "run_hash": run.run_hash, "verified": not problems},
            error_code="VALIDATION_ERROR" if problems else None,
        )

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    def compute_charge(
        self,
        contribution_id: str,
        actor: Actor,
        flags: Optional[FeatureFlags] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Create (or recompute while DRAFT) the charge for a contribution."""
        flags = flags or self._flags
        now = now or datetime.now(timezone.utc)
        with self._locks.hold(("contribution", contribution_id)):
            found = self._store.charge_for_contribution(contribution_id)
            # Submit and transitions lock the charge id; a recompute holds it too.
            charge_keys = [("charge", found.charge_id)] if found is not None else []
            with self._locks.hold(*charge_keys):
                return self._compute_charge_locked(contribution_id, actor, flags, now)

    def _compute_charge_locked(
        self, contribution_id: str, actor: Actor, flags: FeatureFlags, now: datetime,
    ) -> ServiceResult:
        try:
            self._charges.authorize_action("computed", actor, flags)
            contribution = self._store.get_contribution(contribution_id)
            existing = self._store.charge_for_contribution(contribution_id)
            if existing is not None and existing.status != ChargeStatus.DRAFT:
                return ServiceResult(
                    success=True,
                    data={
                        "charge_id": existing.charge_id,
                        "status": existing.status.value,
                        "idempotent": True,
                    },
                )
            agreement = resolve_agreement(self._store.agreements(), contribution)
            if agreement is None:
                raise NotApplicable(
                    f"No approved agreement covers contribution {contribution_id}"
                )
            charge = compute_charge(
                contribution,
                agreement,
                self._vat,
                self._track_rates,
                charge_id=existing.charge_id if existing else None,
                now=now,
            )
        except FundOpsError as e:
            return _failure(e)

        err = self._write_audit([AuditRecord.create(
            "charge", charge.charge_id, AuditAction.CHARGE_COMPUTED, actor.actor_id,
            {
                "contribution_id": contribution_id,
                "agreement_id": charge.agreement_id,
                "total_amount": charge.total_amount,
                "recomputed": existing is not None,
            },
            timestamp_utc=now,
        )])
        if err:
            return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")
        warning = self._safe_persist(lambda: self._store.put_charge(charge))
        return ServiceResult(
            success=True,
            data=self._charge_data(charge),
            warnings=[warning] if warning else [],
        )

    def submit_charge(
        self,
        charge_id: str,
        actor: Actor,
        flags: Optional[FeatureFlags] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """DRAFT → PENDING, netting available credits FIFO.

        A charge already PENDING returns its current state (idempotent).
        With ``dry_run`` the netting plan is returned and nothing changes.
        """
        flags = flags or self._flags
        now = now or datetime.now(timezone.utc)
        with self._locks.hold(("charge", charge_id)):
            try:
                charge = self._store.get_charge(charge_id)
            except FundOpsError as e:
                return _failure(e)

            if dry_run:
                try:
                    self._charges.authorize(
                        charge, charge_id, charge.status, ChargeStatus.PENDING, actor, flags,
                    )
                    plan = self._ledger.plan_fifo(
                        charge_id, charge.investor_id, charge.currency, charge.total_amount,
                        fund_id=charge.fund_id, deal_id=charge.deal_id, now=now,
                    )
                except ConflictIdempotent as e:
                    return _idempotent(e, "charge_id", charge_id)
                except FundOpsError as e:
                    return _failure(e)
                return ServiceResult(
                    success=True,
                    data={
                        "charge_id": charge_id,
                        "dry_run": True,
                        "credits_applied": str(plan.applied),
                        "net_amount": str(charge.total_amount - plan.applied),
                        "applications": [to_canonical(a) for a in plan.applications],
                    },
                )

            prior = ChargeStateMachine.snapshot_state(charge)
            applied: list[CreditApplication] = []

            def _rollback() -> None:
                ChargeStateMachine.restore_state(charge, prior)
                self._ledger.retract(applied)

            try:
                self._charges.apply(charge, ChargeStatus.PENDING, actor, flags, now=now)
                netting = self._ledger.apply_fifo(
                    charge_id, charge.investor_id, charge.currency, charge.total_amount,
                    fund_id=charge.fund_id, deal_id=charge.deal_id, now=now,
                )
                applied.extend(netting.applications)
                charge.credits_applied = netting.applied
                charge.net_amount = charge.total_amount - netting.applied
                charge.application_ids = [a.application_id for a in netting.applications]
            except ConflictIdempotent as e:
                return _idempotent(e, "charge_id", charge_id)
            except FundOpsError as e:
                _rollback()
                return _failure(e)
            except Exception:
                _rollback()
                self._record_internal_failure("charge", charge_id, "submit_charge", actor, now)
                raise

            records = self._application_records(applied, actor, now)
            records.append(AuditRecord.create(
                "charge", charge_id, AuditAction.CHARGE_SUBMITTED, actor.actor_id,
                {
                    "credits_applied": charge.credits_applied,
                    "net_amount": charge.net_amount,
                    "residual": netting.residual,
                },
                timestamp_utc=now,
            ))
            err = self._write_audit(records)
            if err:
                _rollback()
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")

            warnings = []
            data = self._charge_data(charge)
            shortfall = netting.shortfall() if netting.applications else None
            if shortfall is not None:
                warnings.append(shortfall.message)
                data["residual"] = str(shortfall.residual)
            warning = self._safe_persist(lambda: self._store.put_charge(charge))
            if warning:
                warnings.append(warning)
            return ServiceResult(success=True, data=data, warnings=warnings)

    def approve_charge(self, charge_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                       now: Optional[datetime] = None) -> ServiceResult:
        """PENDING → APPROVED (admin)."""
        return self._transition_charge(charge_id, ChargeStatus.APPROVED, actor, flags, "", now)

    def reject_charge(self, charge_id: str, actor: Actor, reason: str,
                      flags: Optional[FeatureFlags] = None, now: Optional[datetime] = None) -> ServiceResult:
        """PENDING → REJECTED (admin, reason required); reverses all netting."""
        return self._transition_charge(charge_id, ChargeStatus.REJECTED, actor, flags, reason, now)

    def mark_paid(self, charge_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                  now: Optional[datetime] = None) -> ServiceResult:
        """APPROVED → PAID (human admin only)."""
        return self._transition_charge(charge_id, ChargeStatus.PAID, actor, flags, "", now)

    def reopen_charge(self, charge_id: str, actor: Actor, flags: Optional[FeatureFlags] = None,
                      now: Optional[datetime] = None) -> ServiceResult:
        """REJECTED → DRAFT so the charge can be corrected and resubmitted."""
        return self._transition_charge(charge_id, ChargeStatus.DRAFT, actor, flags, "", now)

    def _transition_charge(
        self,
        charge_id: str,
        target: ChargeStatus,
        actor: Actor,
        flags: Optional[FeatureFlags],
        reason: str,
        now: Optional[datetime],
    ) -> ServiceResult:
        flags = flags or self._flags
        now = now or datetime.now(timezone.utc)
        with self._locks.hold(("charge", charge_id)):
            try:
                charge = self._store.get_charge(charge_id)
            except FundOpsError as e:
                return _failure(e)

            prior = ChargeStateMachine.snapshot_state(charge)
            reversals: list[CreditReversal] = []

            def _rollback() -> None:
                ChargeStateMachine.restore_state(charge, prior)
                self._restore_reversals(reversals)

            try:
                self._charges.apply(charge, target, actor, flags, reason=reason, now=now)
                if target == ChargeStatus.REJECTED:
                    reversals.extend(self._ledger.reverse_target(charge_id, reason=reason, now=now))
                    charge.credits_applied = ZERO
                    charge.net_amount = charge.total_amount
                    charge.application_ids = []
            except ConflictIdempotent as e:
                return _idempotent(e, "charge_id", charge_id)
            except FundOpsError as e:
                _rollback()
                return _failure(e)
            except Exception:
                _rollback()
                self._record_internal_failure("charge", charge_id, f"charge.{target.value}", actor, now)
                raise

            action = {
                ChargeStatus.APPROVED: AuditAction.CHARGE_APPROVED,
                ChargeStatus.REJECTED: AuditAction.CHARGE_REJECTED,
                ChargeStatus.PAID: AuditAction.CHARGE_PAID,
                ChargeStatus.DRAFT: AuditAction.CHARGE_REOPENED,
            }[target]
            records = self._reversal_records(reversals, actor, now)
            records.append(AuditRecord.create(
                "charge", charge_id, action, actor.actor_id,
                {"from": prior["status"].value, "to": target.value, "reason": reason},
                timestamp_utc=now,
            ))
            err = self._write_audit(records)
            if err:
                _rollback()
                return ServiceResult(success=False, errors=[err], error_code="INTERNAL_ERROR")

            logger.info("Charge %s → %s by %s", charge_id, target.value, actor.actor_id)
            warning = self._safe_persist(lambda: self._store.put_charge(charge))
            return ServiceResult(
                success=True,
                data=self._charge_data(charge),
                warnings=[warning] if warning else [],
            )

    def get_charge_detail(self, charge_id: str) -> ServiceResult:
        try:
            charge = self._store.get_charge(charge_id)
        except FundOpsError as e:
            return _failure(e)
        data = self._charge_data(charge)
        data["applications"] = [to_canonical(a) for a in self._ledger.applications_for(charge_id)]
        data["terms_snapshot"] = dict(charge.terms_snapshot)
        data["approvals"] = [to_canonical(s) for s in charge.steps]
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _charge_data(charge: Charge) -> dict[str, Any]:
        return {
            "charge_id": charge.charge_id,
            "status": charge.status.value,
            "base_amount": str(charge.base_amount),
            "discount_amount": str(charge.discount_amount),
            "vat_amount": str(charge.vat_amount),
            "total_amount": str(charge.total_amount),
            "credits_applied": str(charge.credits_applied),
            "net_amount": str(charge.net_amount),
            "reject_reason": charge.reject_reason,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_applications(self, prefix: str) -> list[CreditApplication]:
        return [
            a for target in self._ledger.targets_with_prefix(prefix)
            for a in self._ledger.applications_for(target)
        ]

    def _restore_reversals(self, reversals: list[CreditReversal]) -> None:
        """Re-apply reversed amounts when the action that reversed them fails."""
        if not reversals:
            return
        self._ledger.undo_reversals(reversals)
        logger.warning("Restored %d reversed credit applications after failure", len(reversals))

    @staticmethod
    def _application_records(
        applications: Iterable[CreditApplication], actor: Actor, now: datetime,
    ) -> list[AuditRecord]:
        return [
            AuditRecord.create(
                "credit", a.credit_id, AuditAction.CREDIT_APPLIED, actor.actor_id,
                {
                    "application_id": a.application_id,
                    "target_id": a.target_id,
                    "amount_applied": a.amount_applied,
                    "balance_after": a.balance_after,
                },
                timestamp_utc=now,
            )
            for a in applications
        ]

    @staticmethod
    def _reversal_records(
        reversals: Iterable[CreditReversal], actor: Actor, now: datetime,
    ) -> list[AuditRecord]:
        return [
            AuditRecord.create(
                "credit", r.credit_id, AuditAction.CREDIT_REVERSED, actor.actor_id,
                {
                    "application_id": r.application_id,
                    "target_id": r.target_id,
                    "amount_restored": r.amount_restored,
                    "balance_after": r.balance_after,
                },
                timestamp_utc=now,
            )
            for r in reversals
        ]

    def _write_audit(self, records: list[AuditRecord]) -> Optional[str]:
        """Append audit records as one batch (fail-closed). Returns an error string on failure."""
        try:
            self._audit_log.append_many(records)
            return None
        except (OSError, ValueError) as e:
            logger.error("Audit write failed: %s", e, exc_info=True)
            return f"Audit failure: {e}"

    def _record_internal_failure(
        self, entity: str, entity_id: str, operation: str, actor: Actor, now: datetime,
    ) -> None:
        logger.exception("Unexpected failure in %s for %s %s", operation, entity, entity_id)
        try:
            self._audit_log.append(AuditRecord.create(
                entity, entity_id, AuditAction.ACTION_FAILED, actor.actor_id,
                {"operation": operation}, timestamp_utc=now,
            ))
        except (OSError, ValueError):
            logger.error("Could not audit failure of %s for %s", operation, entity_id, exc_info=True)

    def _safe_persist(self, persist: Callable[[], None]) -> Optional[str]:
        """Persist after audit events have been committed.

        MUST NOT roll back in-memory state: the audit trail is already
        written. On failure sets the degraded flag and returns a warning.
        """
        try:
            persist()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("Persistence degraded: %s", e, exc_info=True)
            return f"Persistence degraded: {e}; state committed in audit trail but store is stale"


def _forbidden(actor: Actor, action: str) -> FundOpsError:
    return Forbidden(f"{actor.actor_id} may not perform {action}")
