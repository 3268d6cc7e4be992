"""FundOps CLI — command-line interface for the commission engine.

Usage:
    python -m fundops.cli status
    python -m fundops.cli evaluate --input batch.json
    python -m fundops.cli run-hash --input batch.json
    python -m fundops.cli check-config
    python -m fundops.cli vat-lookup --country GB --date 2025-03-01

Config and data directories come from --config / --data, then from
FUNDOPS_CONFIG_DIR / FUNDOPS_DATA_DIR (a ``.env`` file in the working
directory is loaded first), then the repository defaults.

Input files for ``evaluate`` and ``run-hash``:
    {
      "ruleset": {"version": "...", "rules": [...]},
      "contributions": [...],
      "aggregates": {"<investor_id>": {...}},
      "credits": [...]
    }
Amounts must be JSON strings or integers.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from fundops.crypto.canonical import compute_run_hash, to_canonical
from fundops.errors import FundOpsError
from fundops.models.calculation import CalculationContext, CalculationSettings
from fundops.persistence.audit_log import AuditLog
from fundops.persistence.codec import (
    aggregates_from_dict,
    contribution_from_dict,
    credit_from_dict,
    ruleset_from_dict,
)
from fundops.policy.resolver import PolicyResolver
from fundops.service import FundOpsService
from fundops.vat.resolver import VatResolver

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"


def _make_service(config_dir: Path, data_dir: Optional[Path] = None) -> FundOpsService:
    """Create a FundOpsService, with a durable audit log when a data dir is given."""
    resolver = PolicyResolver.from_config_dir(config_dir)
    audit_log = None
    if data_dir is not None:
        data_dir.mkdir(parents=True, exist_ok=True)
        audit_log = AuditLog(storage_path=data_dir / "audit.jsonl")
    return FundOpsService(resolver, audit_log=audit_log)


def _read_input(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _print(data: Any) -> None:
    print(json.dumps(to_canonical(data), indent=2, sort_keys=True))


def _settings(config_dir: Path) -> CalculationSettings:
    return PolicyResolver.from_config_dir(config_dir).calculation_settings()


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    _print(service.status())
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    """Preview fee lines for a batch of contributions."""
    service = _make_service(args.config)
    try:
        payload = _read_input(args.input)
        ruleset = ruleset_from_dict(payload["ruleset"])
        contributions = [contribution_from_dict(c) for c in payload.get("contributions", [])]
        aggregates = {
            investor: aggregates_from_dict(raw)
            for investor, raw in payload.get("aggregates", {}).items()
        }
        for raw in payload.get("credits", []):
            result = service.register_credit(credit_from_dict(raw))
            if not result.success:
                print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
                return 1
    except (OSError, ValueError, KeyError, FundOpsError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1

    context = CalculationContext(
        ruleset=ruleset,
        aggregates=aggregates,
        settings=_settings(args.config),
    )
    lines = service.evaluate(contributions, context)
    _print({
        "ruleset_version": ruleset.version,
        "ruleset_checksum": ruleset.checksum,
        "lines": lines,
    })
    return 0


def cmd_run_hash(args: argparse.Namespace) -> int:
    """Print the integrity hash a run over these inputs would carry."""
    try:
        payload = _read_input(args.input)
        contributions = [contribution_from_dict(c) for c in payload.get("contributions", [])]
        version = payload.get("ruleset_version") or payload["ruleset"]["version"]
        aggregates = {
            investor: aggregates_from_dict(raw)
            for investor, raw in payload.get("aggregates", {}).items()
            if investor in {c.investor_id for c in contributions}
        }
    except (OSError, ValueError, KeyError, FundOpsError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    settings = _settings(args.config).as_dict()
    run_hash = compute_run_hash(
        str(version), [c.hash_input() for c in contributions], settings, aggregates,
    )
    _print({"ruleset_version": str(version), "inputs": len(contributions), "run_hash": run_hash})
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    """Load every policy section so malformed config fails loudly."""
    errors: list[str] = []
    try:
        resolver = PolicyResolver.from_config_dir(args.config)
    except (OSError, ValueError) as e:
        print(f"Config check failed: {e}", file=sys.stderr)
        return 1

    checks = [
        ("rounding", resolver.calculation_settings),
        ("track_rates", resolver.track_rates),
        ("feature_flags", resolver.feature_flags),
        ("vat_rates", resolver.vat_table),
    ]
    for label, loader in checks:
        try:
            loader()
        except (FundOpsError, ValueError, KeyError) as e:
            errors.append(f"{label}: {e}")

    transitions = resolver.raw().get("transitions", {})
    for machine, targets in sorted(transitions.items()):
        for target in sorted(targets):
            try:
                resolver.transition_policy(machine, target)
            except (FundOpsError, ValueError) as e:
                errors.append(f"{machine} → {target}: {e}")

    if errors:
        print("Config check failed:")
        for err in errors:
            print(f"- {err}")
        return 1
    print(f"Config check passed (policy {resolver.version}).")
    return 0


def cmd_vat_lookup(args: argparse.Namespace) -> int:
    resolver = PolicyResolver.from_config_dir(args.config)
    vat = VatResolver(resolver.vat_table())
    try:
        on = date.fromisoformat(args.date)
        rate = vat.resolve(args.country.upper(), on)
    except (ValueError, FundOpsError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    _print({
        "country_code": rate.country_code,
        "date": on,
        "percentage": rate.percentage,
        "effective_from": rate.effective_from,
        "effective_to": rate.effective_to,
    })
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fundops",
        description="FundOps — commission and settlement engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config directory (default: $FUNDOPS_CONFIG_DIR or config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="Path to data directory for the audit log (default: $FUNDOPS_DATA_DIR)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show engine status")

    # evaluate
    p_eval = sub.add_parser("evaluate", help="Preview fee lines for a batch")
    p_eval.add_argument("--input", type=Path, required=True, help="Batch JSON file")

    # run-hash
    p_hash = sub.add_parser("run-hash", help="Compute the run integrity hash for a batch")
    p_hash.add_argument("--input", type=Path, required=True, help="Batch JSON file")

    # check-config
    sub.add_parser("check-config", help="Validate policy and VAT configuration")

    # vat-lookup
    p_vat = sub.add_parser("vat-lookup", help="Show the VAT rate in effect")
    p_vat.add_argument("--country", required=True, help="ISO country code")
    p_vat.add_argument("--date", required=True, help="ISO date (YYYY-MM-DD)")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.config is None:
        env_config = os.getenv("FUNDOPS_CONFIG_DIR")
        args.config = Path(env_config) if env_config else DEFAULT_CONFIG
    if args.data is None:
        env_data = os.getenv("FUNDOPS_DATA_DIR")
        args.data = Path(env_data) if env_data else None

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "evaluate": cmd_evaluate,
        "run-hash": cmd_run_hash,
        "check-config": cmd_check_config,
        "vat-lookup": cmd_vat_lookup,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    logger.debug("Running %s with config %s", args.command, args.config)
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
