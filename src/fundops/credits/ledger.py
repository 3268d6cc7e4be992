"""Credit ledger — FIFO netting and exact reversal.

Balances are derived from an append-only stream of CreditApplication
and CreditReversal events. The cached balance map is only a projection
of that stream; ``replay_balance()`` recomputes it from scratch.

Matching:
- same investor and currency, credit not cancelled, balance > 0
- FUND credits net any line of their fund
- DEAL credits only net DEAL lines of the same deal
- targets with neither fund nor deal (global) cannot be netted

FIFO order is created_at ascending, credit_id as tie-break. The ledger
never applies more than a credit's balance or more than the target.

Concurrency: ``apply_fifo`` and ``reverse_target`` hold the lock of every
(investor, scope, scope ref, currency) key the target can touch, so
netting for one scope is serialized while unrelated scopes run freely.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional
from uuid import uuid4

from fundops.concurrency import LockRegistry
from fundops.errors import NotFound, ValidationError
from fundops.models.credit import (
    Credit,
    CreditApplication,
    CreditReversal,
    CreditStatus,
    NettingResult,
)
from fundops.models.money import round_payable
from fundops.models.party import Scope

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class CreditLedger:
    """Event-sourced credit balances with FIFO application.

    Usage:
        ledger = CreditLedger()
        ledger.register_credit(credit)

        result = ledger.apply_fifo(
            "charge_1", "inv-1", "USD", Decimal("1000"),
            fund_id="fund-1",
        )
        result.residual            # uncovered remainder, 0 when fully netted

        ledger.reverse_target("charge_1", reason="rejected")
    """

    def __init__(self, locks: Optional[LockRegistry] = None) -> None:
        self._locks = locks or LockRegistry()
        self._state_lock = threading.RLock()
        self._credits: dict[str, Credit] = {}
        self._balances: dict[str, Decimal] = {}
        self._applications: list[CreditApplication] = []
        self._reversals: list[CreditReversal] = []
        self._reversed_ids: set[str] = set()
        self._sequence = 0

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def register_credit(self, credit: Credit) -> None:
        """Add a credit with its full original amount available."""
        if credit.original_amount <= ZERO:
            raise ValidationError(f"Credit {credit.credit_id}: original_amount must be positive")
        if credit.scope == Scope.FUND and not credit.fund_id:
            raise ValidationError(f"Credit {credit.credit_id}: FUND scope requires fund_id")
        if credit.scope == Scope.DEAL and not credit.deal_id:
            raise ValidationError(f"Credit {credit.credit_id}: DEAL scope requires deal_id")
        with self._state_lock:
            if credit.credit_id in self._credits:
                raise ValidationError(f"Duplicate credit ID: {credit.credit_id}")
            self._credits[credit.credit_id] = credit
            self._balances[credit.credit_id] = credit.original_amount

    def get_credit(self, credit_id: str) -> Credit:
        credit = self._credits.get(credit_id)
        if credit is None:
            raise NotFound(f"Unknown credit: {credit_id}")
        return credit

    def credits(self) -> list[Credit]:
        return list(self._credits.values())

    def balance(self, credit_id: str) -> Decimal:
        self.get_credit(credit_id)
        return self._balances[credit_id]

    def status(self, credit_id: str) -> CreditStatus:
        credit = self.get_credit(credit_id)
        if credit.cancelled:
            return CreditStatus.CANCELLED
        remaining = self._balances[credit_id]
        if remaining == credit.original_amount:
            return CreditStatus.AVAILABLE
        if remaining == ZERO:
            return CreditStatus.FULLY_APPLIED
        return CreditStatus.PARTIALLY_APPLIED

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    @staticmethod
    def scope_keys(
        investor_id: str,
        currency: str,
        fund_id: Optional[str],
        deal_id: Optional[str],
    ) -> list[tuple[str, str, str, str]]:
        """Lock keys for every credit scope a target can draw from."""
        keys = []
        if fund_id:
            keys.append((investor_id, Scope.FUND.value, fund_id, currency))
        if deal_id:
            keys.append((investor_id, Scope.DEAL.value, deal_id, currency))
        return keys

    def applicable_credits(
        self,
        investor_id: str,
        currency: str,
        fund_id: Optional[str] = None,
        deal_id: Optional[str] = None,
    ) -> list[Credit]:
        """Credits that may net a target, in FIFO order."""
        if not fund_id and not deal_id:
            raise ValidationError("Global targets (no fund_id or deal_id) cannot be netted")
        matches = []
        for credit in self._credits.values():
            if credit.investor_id != investor_id or credit.currency != currency:
                continue
            if credit.cancelled or self._balances[credit.credit_id] <= ZERO:
                continue
            if credit.scope == Scope.FUND:
                if not fund_id or credit.fund_id != fund_id:
                    continue
            elif not deal_id or credit.deal_id != deal_id:
                continue
            matches.append(credit)
        return sorted(matches, key=lambda c: (c.created_at, c.credit_id))

    # ------------------------------------------------------------------
    # Netting
    # ------------------------------------------------------------------

    def plan_fifo(
        self,
        target_id: str,
        investor_id: str,
        currency: str,
        amount: Decimal,
        fund_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NettingResult:
        """Compute a FIFO netting plan without changing any balance."""
        if amount < ZERO:
            raise ValidationError(f"Netting target must be non-negative, got {amount}")
        now = now or datetime.now(timezone.utc)
        remaining = round_payable(amount)
        planned: list[CreditApplication] = []
        sequence = self._sequence

        for credit in self.applicable_credits(investor_id, currency, fund_id, deal_id):
            if remaining <= ZERO:
                break
            available = self._balances[credit.credit_id]
            applied = min(available, remaining)
            sequence += 1
            planned.append(CreditApplication(
                application_id=f"capp_{uuid4().hex[:12]}",
                credit_id=credit.credit_id,
                target_id=target_id,
                amount_applied=applied,
                balance_after=available - applied,
                applied_at=now,
                sequence=sequence,
            ))
            remaining -= applied

        return NettingResult(
            target_id=target_id,
            requested=round_payable(amount),
            applications=tuple(planned),
            residual=remaining,
        )

    def commit(self, result: NettingResult) -> None:
        """Append a planned netting to the event stream.

        Fail-closed: if any balance moved since planning, nothing is applied.
        """
        with self._state_lock:
            for app in result.applications:
                current = self._balances.get(app.credit_id)
                if current is None:
                    raise NotFound(f"Unknown credit: {app.credit_id}")
                if app.amount_applied > current or current - app.amount_applied != app.balance_after:
                    raise ValidationError(
                        f"Stale netting plan for credit {app.credit_id}: "
                        f"balance is {current}, plan expected {app.balance_after + app.amount_applied}"
                    )
            for app in result.applications:
                self._balances[app.credit_id] -= app.amount_applied
                self._applications.append(app)
                self._sequence = max(self._sequence, app.sequence)

        if result.applications:
            logger.info(
                "Netted %s of %s against %s (residual %s)",
                result.applied, result.requested, result.target_id, result.residual,
            )

    def apply_fifo(
        self,
        target_id: str,
        investor_id: str,
        currency: str,
        amount: Decimal,
        fund_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NettingResult:
        """Plan and commit FIFO netting under the target's scope locks."""
        keys = self.scope_keys(investor_id, currency, fund_id, deal_id)
        with self._locks.hold(*keys):
            result = self.plan_fifo(
                target_id, investor_id, currency, amount, fund_id, deal_id, now,
            )
            self.commit(result)
        return result

    def retract(self, applications: Iterable[CreditApplication]) -> None:
        """Undo committed applications that have not been acknowledged yet.

        Used for all-or-nothing rollback when a later step of the same
        workflow action fails. Leaves no events behind.
        """
        ids = {a.application_id for a in applications}
        if not ids:
            return
        with self._state_lock:
            kept = []
            for app in self._applications:
                if app.application_id in ids:
                    self._balances[app.credit_id] += app.amount_applied
                else:
                    kept.append(app)
            self._applications = kept
        logger.info("Retracted %d uncommitted credit applications", len(ids))

    def applications_for(self, target_id: str) -> list[CreditApplication]:
        """Active (unreversed) applications against a target, in order."""
        return [
            a for a in self._applications
            if a.target_id == target_id and a.application_id not in self._reversed_ids
        ]

    def targets_with_prefix(self, prefix: str) -> list[str]:
        """Distinct targets with active applications whose id starts with ``prefix``."""
        seen: dict[str, None] = {}
        for app in self._applications:
            if app.target_id.startswith(prefix) and app.application_id not in self._reversed_ids:
                seen.setdefault(app.target_id, None)
        return list(seen)

    def reverse_target(
        self,
        target_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> list[CreditReversal]:
        """Restore every active application against a target.

        Reverses in reverse application order. Idempotent: a second call
        finds nothing active and returns an empty list.
        """
        now = now or datetime.now(timezone.utc)
        active = self.applications_for(target_id)
        keys = set()
        for app in active:
            keys.add(self.get_credit(app.credit_id).scope_key)

        reversals: list[CreditReversal] = []
        with self._locks.hold(*keys), self._state_lock:
            for app in sorted(active, key=lambda a: a.sequence, reverse=True):
                if app.application_id in self._reversed_ids:
                    continue
                restored = self._balances[app.credit_id] + app.amount_applied
                credit = self._credits[app.credit_id]
                if restored > credit.original_amount:
                    raise ValidationError(
                        f"Reversal would push credit {credit.credit_id} above its original amount"
                    )
                self._balances[app.credit_id] = restored
                self._reversed_ids.add(app.application_id)
                reversal = CreditReversal(
                    reversal_id=f"crev_{uuid4().hex[:12]}",
                    application_id=app.application_id,
                    credit_id=app.credit_id,
                    target_id=target_id,
                    amount_restored=app.amount_applied,
                    balance_after=restored,
                    reversed_at=now,
                    reason=reason,
                )
                self._reversals.append(reversal)
                reversals.append(reversal)

        if reversals:
            logger.info("Reversed %d credit applications for %s", len(reversals), target_id)
        return reversals

    def undo_reversals(self, reversals: Iterable[CreditReversal]) -> None:
        """Drop reversals whose workflow action failed, re-activating the applications."""
        ids = {r.reversal_id for r in reversals}
        if not ids:
            return
        with self._state_lock:
            kept = []
            for rev in self._reversals:
                if rev.reversal_id in ids:
                    self._balances[rev.credit_id] -= rev.amount_restored
                    self._reversed_ids.discard(rev.application_id)
                else:
                    kept.append(rev)
            self._reversals = kept
        logger.info("Undid %d credit reversals", len(ids))

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def applications(self) -> list[CreditApplication]:
        return list(self._applications)

    def reversals(self) -> list[CreditReversal]:
        return list(self._reversals)

    def replay_balance(self, credit_id: str) -> Decimal:
        """Recompute a balance from the event stream alone."""
        credit = self.get_credit(credit_id)
        applied = sum(
            (a.amount_applied for a in self._applications if a.credit_id == credit_id),
            ZERO,
        )
        restored = sum(
            (r.amount_restored for r in self._reversals if r.credit_id == credit_id),
            ZERO,
        )
        return credit.original_amount - applied + restored

    def verify(self) -> list[str]:
        """Check conservation for every credit. Empty list means consistent."""
        errors: list[str] = []
        for credit_id, credit in self._credits.items():
            replayed = self.replay_balance(credit_id)
            cached = self._balances[credit_id]
            if replayed != cached:
                errors.append(f"{credit_id}: cached balance {cached} != replayed {replayed}")
            if not ZERO <= replayed <= credit.original_amount:
                errors.append(
                    f"{credit_id}: balance {replayed} outside [0, {credit.original_amount}]"
                )
        return errors
