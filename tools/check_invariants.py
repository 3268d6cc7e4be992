#!/usr/bin/env python3
"""FundOps invariant checks against executable policy artifacts."""

import json
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
POLICY_PATH = ROOT / "config" / "engine_policy.json"
VAT_PATH = ROOT / "config" / "vat_rates.json"

KNOWN_ROLES = {"admin", "finance", "ops", "viewer", "service"}
RUN_TARGETS = {"created", "reviewed", "approved", "exported", "failed"}
CHARGE_TARGETS = {"computed", "pending", "approved", "rejected", "paid", "draft"}
ROUNDING_MODES = {"ROUND_HALF_EVEN", "ROUND_HALF_UP", "ROUND_DOWN"}


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_transitions(machine: str, table: dict, targets: set[str], errors: list[str]) -> None:
    """Every target has a non-empty, known role list."""
    missing = targets - set(table)
    for target in sorted(missing):
        errors.append(f"{machine} transition policy missing target: {target}")
    for target, raw in table.items():
        roles = raw.get("roles", [])
        if not roles:
            errors.append(f"{machine} → {target} must name at least one role")
        unknown = set(roles) - KNOWN_ROLES
        if unknown:
            errors.append(f"{machine} → {target} has unknown roles: {sorted(unknown)}")


def check_vat(records: list[dict], errors: list[str]) -> None:
    """Per country: positive percentages, ordered bounds, no overlap, one open period."""
    by_country: dict[str, list[tuple[date, date | None, str]]] = {}
    for rec in records:
        country = rec.get("country_code", "")
        try:
            pct = Decimal(str(rec["percentage"]))
        except (KeyError, InvalidOperation):
            errors.append(f"VAT rate for {country} has an invalid percentage")
            continue
        if pct < 0 or pct >= 100:
            errors.append(f"VAT rate for {country} must be in [0, 100), got {pct}")
        start = date.fromisoformat(rec["effective_from"])
        end = date.fromisoformat(rec["effective_to"]) if rec.get("effective_to") else None
        if end is not None and end < start:
            errors.append(f"VAT rate for {country} ends before it starts ({start} > {end})")
        by_country.setdefault(country, []).append((start, end, str(pct)))

    for country, periods in by_country.items():
        periods.sort(key=lambda p: p[0])
        if sum(1 for p in periods if p[1] is None) > 1:
            errors.append(f"VAT {country} has more than one open-ended rate")
        for prev, nxt in zip(periods, periods[1:]):
            if prev[1] is None or prev[1] >= nxt[0]:
                errors.append(f"VAT {country} periods overlap at {nxt[0]}")


def check() -> int:
    policy = load_json(POLICY_PATH)
    vat = load_json(VAT_PATH)
    errors: list[str] = []

    # --- Rounding invariants ---
    rounding = policy["rounding"]
    if rounding["payable_places"] != 2:
        errors.append(f"payable_places must be 2, got {rounding['payable_places']}")
    if rounding["calc_places"] < rounding["payable_places"]:
        errors.append("calc_places must be >= payable_places")
    if rounding["mode"] not in ROUNDING_MODES:
        errors.append(f"Unknown rounding mode: {rounding['mode']}")
    if policy.get("tie_break") != "rule_id":
        errors.append("tie_break must be rule_id")

    # --- Track rate invariants ---
    tracks = policy["track_rates"]
    if set(tracks) != {"A", "B", "C"}:
        errors.append(f"track_rates must define exactly A, B, C; got {sorted(tracks)}")
    for name, raw in tracks.items():
        rate = Decimal(str(raw))
        if not (Decimal("0") < rate < Decimal("1")):
            errors.append(f"track {name} rate must be in (0, 1), got {rate}")

    # --- Role matrix invariants ---
    transitions = policy["transitions"]
    check_transitions("run", transitions.get("run", {}), RUN_TARGETS, errors)
    check_transitions("charge", transitions.get("charge", {}), CHARGE_TARGETS, errors)

    run_approval = transitions.get("run", {}).get("approved", {})
    if run_approval.get("distinct_from") != "reviewed_by":
        errors.append("run approval must be distinct from the reviewer")
    if transitions.get("charge", {}).get("paid", {}).get("allow_service"):
        errors.append("service callers must not mark charges paid")
    for machine, target in (("run", "failed"), ("charge", "rejected")):
        if not transitions.get(machine, {}).get(target, {}).get("require_reason"):
            errors.append(f"{machine} → {target} must require a reason")

    # --- Feature flag invariants ---
    flags = policy.get("feature_flags", {})
    for name in ("charges_engine", "commission_runs"):
        if name not in flags:
            errors.append(f"feature flag missing: {name}")

    # --- VAT table invariants ---
    check_vat(vat.get("rates", []), errors)

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
