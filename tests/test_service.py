"""Tests for FundOpsService — proves the facade orchestrates runs, charges and credits atomically."""

import dataclasses
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from fundops import service as service_module
from fundops.models.calculation import CalculationContext, Contribution
from fundops.models.credit import Credit, CreditType
from fundops.models.party import Agreement, Party, PartyRole, PricingMode, Scope, Track, VatMode
from fundops.models.rules import CommissionRule, RuleSet, RuleVariant
from fundops.persistence.audit_log import AuditAction, AuditLog
from fundops.policy.access import Actor, Role
from fundops.policy.resolver import PolicyResolver
from fundops.service import FundOpsService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

FINANCE = Actor.human("fin-1", Role.FINANCE)
FINANCE_2 = Actor.human("fin-2", Role.FINANCE)
ADMIN = Actor.human("adm-1", Role.ADMIN)
VIEWER = Actor.human("view-1", Role.VIEWER)
SERVICE = Actor.service("svc-key-1")


def _now() -> datetime:
    return datetime(2025, 4, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def service(resolver: PolicyResolver) -> FundOpsService:
    return FundOpsService(resolver)


def _contributions() -> list[Contribution]:
    return [
        Contribution("c-1", "inv-1", Decimal("100000"), date(2025, 2, 1), fund_id="f1", deal_id="d1"),
        Contribution("c-2", "inv-1", Decimal("50000"), date(2025, 3, 15), fund_id="f1"),
        Contribution("c-out", "inv-1", Decimal("70000"), date(2025, 5, 1), fund_id="f1"),
    ]


def _ruleset() -> RuleSet:
    return RuleSet("2025.1", (
        CommissionRule(
            rule_id="fee", name="Distributor 1%", variant=RuleVariant.PERCENTAGE,
            rate=Decimal("0.01"), effective_from=date(2025, 1, 1), priority=10, fund_id="f1",
        ),
        CommissionRule(
            rule_id="net", name="Repurchase credits", variant=RuleVariant.CREDIT_NETTING,
            effective_from=date(2025, 1, 1), priority=200, combinable=True,
        ),
    ))


def _register_credits(service: FundOpsService) -> None:
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for credit_id, amount, offset in (("cr-old", "600", 0), ("cr-new", "500", 1)):
        result = service.register_credit(Credit(
            credit_id=credit_id,
            investor_id="inv-1",
            credit_type=CreditType.REPURCHASE,
            scope=Scope.FUND,
            currency="USD",
            original_amount=Decimal(amount),
            created_at=base + timedelta(days=offset),
            fund_id="f1",
        ))
        assert result.success


def _register_agreement(service: FundOpsService) -> None:
    service.register_party(Party("p-1", "Acme", PartyRole.DISTRIBUTOR))
    agreement = Agreement(
        agreement_id="agr-deal",
        party_id="p-1",
        scope=Scope.DEAL,
        pricing_mode=PricingMode.CUSTOM,
        deal_id="d1",
        custom_rate=Decimal("0.01"),
        vat_mode=VatMode.EXEMPT,
        effective_from=date(2025, 1, 1),
    )
    assert service.register_agreement(agreement).success
    assert service.activate_agreement("agr-deal", FINANCE).success
    assert service.approve_agreement("agr-deal", ADMIN).success


def _seed(service: FundOpsService) -> None:
    for c in _contributions():
        assert service.register_contribution(c).success
    service.publish_ruleset(_ruleset())
    _register_credits(service)
    _register_agreement(service)


class _FailingAudit(AuditLog):
    """File-backed audit log whose disk refuses any batch holding one action."""

    def __init__(self, fail_on: AuditAction, storage_path: Path) -> None:
        super().__init__(storage_path)
        self.fail_on = fail_on

    def _append_to_file(self, records) -> None:
        if any(r.action == self.fail_on for r in records):
            raise OSError("disk full")
        super()._append_to_file(records)


class TestAgreements:
    def test_viewer_cannot_activate(self, service: FundOpsService) -> None:
        service.register_party(Party("p-1", "Acme", PartyRole.DISTRIBUTOR))
        service.register_agreement(Agreement(
            agreement_id="agr-1", party_id="p-1", scope=Scope.FUND,
            pricing_mode=PricingMode.TRACK, fund_id="f1", selected_track=Track.A,
        ))
        result = service.activate_agreement("agr-1", VIEWER)
        assert not result.success
        assert result.error_code == "FORBIDDEN"

    def test_unknown_party_rejected(self, service: FundOpsService) -> None:
        result = service.register_agreement(Agreement(
            agreement_id="agr-x", party_id="ghost", scope=Scope.FUND,
            pricing_mode=PricingMode.TRACK, fund_id="f1", selected_track=Track.A,
        ))
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"

    def test_approve_twice_idempotent(self, service: FundOpsService) -> None:
        _register_agreement(service)
        again = service.approve_agreement("agr-deal", ADMIN)
        assert again.success
        assert again.data["idempotent"]
        assert len(service.audit_log.records(action=AuditAction.AGREEMENT_APPROVED)) == 1

    def test_amend_creates_new_version(self, service: FundOpsService) -> None:
        _register_agreement(service)
        result = service.amend_agreement("agr-deal", FINANCE, custom_rate=Decimal("0.012"))
        assert result.success
        assert result.data["version"] == 2
        new = service.store.get_agreement(result.data["agreement_id"])
        assert new.custom_rate == Decimal("0.012")
        assert new.supersedes == "agr-deal"
        assert service.store.get_agreement("agr-deal").status.value == "superseded"


class TestCharges:
    def test_compute_requires_agreement(self, service: FundOpsService) -> None:
        for c in _contributions():
            service.register_contribution(c)
        result = service.compute_charge("c-1", FINANCE)
        assert not result.success
        assert result.error_code == "NOT_APPLICABLE"

    def test_compute_unknown_contribution(self, service: FundOpsService) -> None:
        result = service.compute_charge("missing", FINANCE)
        assert result.error_code == "NOT_FOUND"

    def test_submit_nets_fifo(self, service: FundOpsService) -> None:
        _seed(service)
        computed = service.compute_charge("c-1", FINANCE, now=_now())
        assert computed.success
        assert computed.data["total_amount"] == "1000.00"
        charge_id = computed.data["charge_id"]

        result = service.submit_charge(charge_id, FINANCE, now=_now())
        assert result.success
        assert result.data["status"] == "pending"
        assert result.data["credits_applied"] == "1000.00"
        assert Decimal(result.data["net_amount"]) == Decimal("0")
        assert service.ledger.balance("cr-old") == Decimal("0")
        assert service.ledger.balance("cr-new") == Decimal("100")
        assert len(service.audit_log.records(action=AuditAction.CREDIT_APPLIED)) == 2

    def test_recompute_while_draft_keeps_id(self, service: FundOpsService) -> None:
        _seed(service)
        first = service.compute_charge("c-1", FINANCE)
        second = service.compute_charge("c-1", FINANCE)
        assert second.data["charge_id"] == first.data["charge_id"]

    def test_compute_after_submit_is_idempotent(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        service.submit_charge(charge_id, FINANCE)
        again = service.compute_charge("c-1", FINANCE)
        assert again.success
        assert again.data["idempotent"]
        assert again.data["status"] == "pending"

    def test_dry_run_changes_nothing(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        preview = service.submit_charge(charge_id, FINANCE, dry_run=True)
        assert preview.success
        assert preview.data["dry_run"]
        assert preview.data["credits_applied"] == "1000.00"
        assert len(preview.data["applications"]) == 2
        assert service.get_charge_detail(charge_id).data["status"] == "draft"
        assert service.ledger.balance("cr-old") == Decimal("600")

    def test_reject_reverses_credits(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        service.submit_charge(charge_id, FINANCE)

        missing_reason = service.reject_charge(charge_id, ADMIN, reason="")
        assert missing_reason.error_code == "VALIDATION_ERROR"

        result = service.reject_charge(charge_id, ADMIN, reason="wrong deal")
        assert result.success
        assert result.data["status"] == "rejected"
        assert Decimal(result.data["credits_applied"]) == Decimal("0")
        assert result.data["net_amount"] == "1000.00"
        assert service.ledger.balance("cr-old") == Decimal("600")
        assert service.ledger.balance("cr-new") == Decimal("500")
        assert service.ledger.verify() == []
        assert len(service.audit_log.records(action=AuditAction.CREDIT_REVERSED)) == 2

    def test_reopen_and_resubmit(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        service.submit_charge(charge_id, FINANCE)
        service.reject_charge(charge_id, ADMIN, reason="recheck")
        assert service.reopen_charge(charge_id, FINANCE).data["status"] == "draft"
        result = service.submit_charge(charge_id, FINANCE)
        assert result.success
        assert service.ledger.balance("cr-new") == Decimal("100")

    def test_approve_and_pay(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", SERVICE).data["charge_id"]
        service.submit_charge(charge_id, SERVICE)
        assert service.approve_charge(charge_id, ADMIN).success

        by_service = service.mark_paid(charge_id, SERVICE)
        assert not by_service.success
        assert by_service.error_code == "FORBIDDEN"

        paid = service.mark_paid(charge_id, ADMIN)
        assert paid.success
        detail = service.get_charge_detail(charge_id).data
        assert detail["status"] == "paid"
        assert [s["step_name"] for s in detail["approvals"]] == ["pending", "approved", "paid"]
        assert detail["terms_snapshot"]["agreement_id"] == "agr-deal"

    def test_repeat_submit_is_idempotent(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        service.submit_charge(charge_id, FINANCE)
        again = service.submit_charge(charge_id, FINANCE)
        assert again.success
        assert again.data["idempotent"]
        assert len(service.ledger.applications_for(charge_id)) == 2

    def test_concurrent_double_submit_nets_once(self, service: FundOpsService) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        barrier = threading.Barrier(2)
        results = []

        def submit() -> None:
            barrier.wait()
            results.append(service.submit_charge(charge_id, FINANCE))

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.success for r in results)
        assert sum(1 for r in results if r.data.get("idempotent")) == 1
        assert sum(a.amount_applied for a in service.ledger.applications_for(charge_id)) == Decimal("1000")
        assert len(service.audit_log.records(entity_id=charge_id, action=AuditAction.CHARGE_SUBMITTED)) == 1

    def test_recompute_racing_submit_nets_once(self, service: FundOpsService, monkeypatch) -> None:
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        computing = threading.Event()
        submitted = threading.Event()
        real_compute = service_module.compute_charge

        def slow_compute(*args, **kwargs):
            charge = real_compute(*args, **kwargs)
            computing.set()
            # A submit arriving now blocks on the charge lock
            submitted.wait(timeout=0.5)
            return charge

        monkeypatch.setattr(service_module, "compute_charge", slow_compute)
        results = {}

        def recompute() -> None:
            results["compute"] = service.compute_charge("c-1", FINANCE)

        def submit() -> None:
            computing.wait(timeout=5)
            results["submit"] = service.submit_charge(charge_id, FINANCE)
            submitted.set()

        threads = [threading.Thread(target=recompute), threading.Thread(target=submit)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results["compute"].success
        assert results["submit"].success
        assert service.get_charge_detail(charge_id).data["status"] == "pending"
        assert sum(a.amount_applied for a in service.ledger.applications_for(charge_id)) == Decimal("1000")
        again = service.submit_charge(charge_id, FINANCE)
        assert again.data["idempotent"]
        assert sum(a.amount_applied for a in service.ledger.applications_for(charge_id)) == Decimal("1000")
        assert service.ledger.balance("cr-new") == Decimal("100")

    def test_audit_failure_rolls_back(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = FundOpsService(resolver, audit_log=_FailingAudit(AuditAction.CHARGE_SUBMITTED, tmp_path / "audit.jsonl"))
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        result = service.submit_charge(charge_id, FINANCE)
        assert not result.success
        assert "Audit failure" in result.errors[0]
        assert service.get_charge_detail(charge_id).data["status"] == "draft"
        assert service.ledger.balance("cr-old") == Decimal("600")
        assert service.ledger.applications() == []
        assert service.audit_log.records(action=AuditAction.CREDIT_APPLIED) == []
        reloaded = AuditLog(tmp_path / "audit.jsonl")
        assert reloaded.records(action=AuditAction.CREDIT_APPLIED) == []
        assert reloaded.count == service.audit_log.count

    def test_reject_audit_failure_restores_netting(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = FundOpsService(resolver, audit_log=_FailingAudit(AuditAction.CHARGE_REJECTED, tmp_path / "audit.jsonl"))
        _seed(service)
        charge_id = service.compute_charge("c-1", FINANCE).data["charge_id"]
        service.submit_charge(charge_id, FINANCE)
        result = service.reject_charge(charge_id, ADMIN, reason="nope")
        assert not result.success
        assert service.get_charge_detail(charge_id).data["status"] == "pending"
        assert service.ledger.balance("cr-old") == Decimal("0")
        assert len(service.ledger.applications_for(charge_id)) == 2
        assert service.ledger.verify() == []
        assert service.audit_log.records(action=AuditAction.CREDIT_REVERSED) == []

    def test_flag_disabled(self, service: FundOpsService, resolver: PolicyResolver) -> None:
        _seed(service)
        off = resolver.feature_flags().with_flag("charges_engine", False)
        result = service.compute_charge("c-1", FINANCE, flags=off)
        assert result.error_code == "FORBIDDEN"


class TestRuns:
    def test_no_ruleset(self, service: FundOpsService) -> None:
        result = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE)
        assert result.error_code == "NOT_FOUND"

    def test_create_run_nets_and_totals(self, service: FundOpsService) -> None:
        _seed(service)
        result = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE, now=_now())
        assert result.success
        assert result.data["status"] == "draft"
        assert result.data["line_count"] == 4
        assert Decimal(result.data["total_payable"]) == Decimal("400")

        run_id = result.data["run_id"]
        detail = service.get_run_detail(run_id).data
        assert detail["hash_verified"]
        assert [i["contribution_id"] for i in detail["inputs"]] == ["c-1", "c-2"]
        assert detail["totals"]["credits_applied"] == "1100"
        assert len(detail["results"]) == 4
        assert service.ledger.balance("cr-new") == Decimal("0")
        assert len(service.ledger.targets_with_prefix(f"{run_id}:")) == 2

    def test_approval_lifecycle_and_export(self, service: FundOpsService) -> None:
        _seed(service)
        run_id = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_id"]
        assert service.submit_run(run_id, FINANCE).success

        self_approve = service.approve_run(run_id, FINANCE)
        assert self_approve.error_code == "FORBIDDEN"

        assert service.approve_run(run_id, FINANCE_2).success
        exported = service.export_run(run_id, FINANCE)
        assert exported.success
        assert exported.data["status"] == "exported"
        assert len(exported.data["rows"]) == 4
        assert exported.data["rows"][0]["vat_mode"] == "exempt"

        approvals = service.get_run_detail(run_id).data["approvals"]
        assert [a["actor_id"] for a in approvals] == ["fin-1", "fin-2", "fin-1"]

    def test_reject_run_releases_credits(self, service: FundOpsService) -> None:
        _seed(service)
        run_id = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_id"]
        service.submit_run(run_id, FINANCE)

        assert service.reject_run(run_id, FINANCE, comment="").error_code == "VALIDATION_ERROR"
        result = service.reject_run(run_id, FINANCE, comment="wrong period")
        assert result.success
        assert result.data["status"] == "failed"
        assert service.ledger.balance("cr-old") == Decimal("600")
        assert service.ledger.balance("cr-new") == Decimal("500")
        assert service.ledger.verify() == []

    def test_run_hash_ignores_registration_order(self, resolver: PolicyResolver) -> None:
        hashes = []
        for order in (_contributions(), list(reversed(_contributions()))):
            service = FundOpsService(resolver)
            for c in order:
                service.register_contribution(c)
            service.publish_ruleset(_ruleset())
            hashes.append(service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_hash"])
        assert hashes[0] == hashes[1]

    def test_approved_run_locks_contributions(self, service: FundOpsService) -> None:
        _seed(service)
        run_id = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_id"]
        service.submit_run(run_id, FINANCE)
        service.approve_run(run_id, ADMIN)
        edited = dataclasses.replace(_contributions()[0], amount=Decimal("1"))
        result = service.register_contribution(edited)
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"

    def test_supersede_requires_frozen_run(self, service: FundOpsService) -> None:
        _seed(service)
        run_id = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_id"]
        early = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE, supersedes=run_id)
        assert early.error_code == "VALIDATION_ERROR"

        service.submit_run(run_id, FINANCE)
        service.approve_run(run_id, ADMIN)
        correction = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE, supersedes=run_id)
        assert correction.success
        assert service.get_run_detail(correction.data["run_id"]).data["supersedes"] == run_id

    def test_verify_detects_tampering(self, service: FundOpsService) -> None:
        _seed(service)
        run_id = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE).data["run_id"]
        assert service.verify_run(run_id).success

        run = service.store.get_run(run_id)
        run.inputs[0] = dataclasses.replace(run.inputs[0], amount=Decimal("100001"))
        result = service.verify_run(run_id)
        assert not result.success
        assert any("run hash mismatch" in e for e in result.errors)

    def test_viewer_cannot_create(self, service: FundOpsService) -> None:
        _seed(service)
        result = service.create_run(date(2025, 1, 1), date(2025, 3, 31), VIEWER)
        assert result.error_code == "FORBIDDEN"
        assert service.ledger.balance("cr-old") == Decimal("600")

    def test_create_audit_failure_releases_credits(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = FundOpsService(resolver, audit_log=_FailingAudit(AuditAction.RUN_CREATED, tmp_path / "audit.jsonl"))
        _seed(service)
        result = service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE)
        assert not result.success
        assert service.ledger.applications() == []
        assert service.store.runs() == []


class TestPreviewAndStatus:
    def test_evaluate_does_not_consume(self, service: FundOpsService) -> None:
        _seed(service)
        context = CalculationContext(ruleset=_ruleset())
        lines = service.evaluate(_contributions()[:1], context)
        assert [line.rule_id for line in lines] == ["fee", "net"]
        assert service.ledger.balance("cr-old") == Decimal("600")

    def test_status(self, service: FundOpsService) -> None:
        _seed(service)
        service.create_run(date(2025, 1, 1), date(2025, 3, 31), FINANCE)
        status = service.status()
        assert status["ruleset_version"] == "2025.1"
        assert status["runs"] == {"draft": 1}
        assert status["credits"] == 2
        assert status["ledger_errors"] == []
        assert status["feature_flags"]["commission_runs"] is True
