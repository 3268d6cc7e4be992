"""Row-level data store interface and the in-memory implementation.

The engine only needs keyed get/put over its entities. A database-backed
store implements the same Protocol; the in-memory store backs tests and
the CLI.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from fundops.errors import NotFound, ValidationError
from fundops.models.calculation import Contribution
from fundops.models.party import Agreement, AgreementStatus, Party
from fundops.models.rules import RuleSet
from fundops.models.workflow import Charge, Run


class DataStore(Protocol):
    def put_party(self, party: Party) -> None: ...
    def get_agreement(self, agreement_id: str) -> Agreement: ...
    def put_agreement(self, agreement: Agreement) -> None: ...
    def agreements(self) -> list[Agreement]: ...
    def get_contribution(self, contribution_id: str) -> Contribution: ...
    def put_contribution(self, contribution: Contribution) -> None: ...
    def contributions(self) -> list[Contribution]: ...
    def active_ruleset(self) -> RuleSet: ...
    def put_ruleset(self, ruleset: RuleSet) -> None: ...
    def get_run(self, run_id: str) -> Run: ...
    def put_run(self, run: Run) -> None: ...
    def runs(self) -> list[Run]: ...
    def get_charge(self, charge_id: str) -> Charge: ...
    def put_charge(self, charge: Charge) -> None: ...
    def charge_for_contribution(self, contribution_id: str) -> Optional[Charge]: ...
    def charges(self) -> list[Charge]: ...


class InMemoryStore:
    """Dict-backed DataStore.

    Contributions referenced by an approved run are locked: ``put_contribution``
    refuses to overwrite them.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._parties: dict[str, Party] = {}
        self._agreements: dict[str, Agreement] = {}
        self._contributions: dict[str, Contribution] = {}
        self._rulesets: list[RuleSet] = []
        self._runs: dict[str, Run] = {}
        self._charges: dict[str, Charge] = {}

    @staticmethod
    def _get(table: dict, key: str, kind: str):
        item = table.get(key)
        if item is None:
            raise NotFound(f"Unknown {kind}: {key}")
        return item

    # Parties

    def put_party(self, party: Party) -> None:
        with self._lock:
            self._parties[party.party_id] = party

    # Agreements

    def get_agreement(self, agreement_id: str) -> Agreement:
        return self._get(self._agreements, agreement_id, "agreement")

    def put_agreement(self, agreement: Agreement) -> None:
        with self._lock:
            if agreement.party_id not in self._parties:
                raise ValidationError(f"Agreement references unknown party {agreement.party_id}")
            existing = self._agreements.get(agreement.agreement_id)
            if existing is not None and existing.is_immutable and existing != agreement:
                # Only the approved → superseded status move is allowed in place
                if not (
                    existing.status == AgreementStatus.APPROVED
                    and agreement.status == AgreementStatus.SUPERSEDED
                ):
                    raise ValidationError(
                        f"Agreement {agreement.agreement_id} is {existing.status.value} and immutable"
                    )
            self._agreements[agreement.agreement_id] = agreement

    def agreements(self) -> list[Agreement]:
        return list(self._agreements.values())

    # Contributions

    def get_contribution(self, contribution_id: str) -> Contribution:
        return self._get(self._contributions, contribution_id, "contribution")

    def put_contribution(self, contribution: Contribution) -> None:
        with self._lock:
            cid = contribution.contribution_id
            if cid in self._contributions and self._is_locked(cid):
                raise ValidationError(
                    f"Contribution {cid} is referenced by an approved run and cannot change"
                )
            self._contributions[cid] = contribution

    def contributions(self) -> list[Contribution]:
        return list(self._contributions.values())

    def _is_locked(self, contribution_id: str) -> bool:
        return any(
            run.is_frozen and any(c.contribution_id == contribution_id for c in run.inputs)
            for run in self._runs.values()
        )

    # Rules

    def active_ruleset(self) -> RuleSet:
        if not self._rulesets:
            raise NotFound("No ruleset configured")
        return self._rulesets[-1]

    def put_ruleset(self, ruleset: RuleSet) -> None:
        with self._lock:
            self._rulesets.append(ruleset)

    # Runs

    def get_run(self, run_id: str) -> Run:
        return self._get(self._runs, run_id, "run")

    def put_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.run_id] = run

    def runs(self) -> list[Run]:
        return list(self._runs.values())

    # Charges

    def get_charge(self, charge_id: str) -> Charge:
        return self._get(self._charges, charge_id, "charge")

    def put_charge(self, charge: Charge) -> None:
        with self._lock:
            self._charges[charge.charge_id] = charge

    def charges(self) -> list[Charge]:
        return list(self._charges.values())

    def charge_for_contribution(self, contribution_id: str) -> Optional[Charge]:
        for charge in self._charges.values():
            if charge.contribution_id == contribution_id:
                return charge
        return None
