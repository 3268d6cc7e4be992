"""Canonical JSON and content hashing.

Determinism rules:
- Object keys are sorted at every nesting level.
- Decimals are rendered in plain notation with trailing zeros removed,
  so ``Decimal("1000")`` and ``Decimal("1000.00")`` hash identically.
- Dates and datetimes are rendered as ISO-8601 strings.
- Enums are rendered by value; sets are sorted.
- Separators are fixed (no whitespace), output is UTF-8.

Hashes are returned as ``"sha256:<hex>"``, the same form used for
audit records.
"""

from __future__ import annotations

import dataclasses
import enum
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional


def _normalize_decimal(value: Decimal) -> str:
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def to_canonical(obj: Any) -> Any:
    """Convert an object tree into JSON-native values with stable rendering."""
    if obj is None or isinstance(obj, (bool, str, int)):
        return obj
    if isinstance(obj, float):
        raise TypeError("floats are not canonicalizable; use Decimal")
    if isinstance(obj, Decimal):
        return _normalize_decimal(obj)
    if isinstance(obj, enum.Enum):
        return to_canonical(obj.value)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: to_canonical(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, Mapping):
        return {str(k): to_canonical(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        return sorted(to_canonical(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_canonical(v) for v in obj]
    raise TypeError(f"Cannot canonicalize {type(obj).__name__}")


def canonical_json(obj: Any) -> str:
    """Serialize to canonical JSON text."""
    return json.dumps(
        to_canonical(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )


def content_hash(obj: Any) -> str:
    """SHA-256 over the canonical JSON of ``obj``."""
    digest = hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def input_sort_key(item: Mapping[str, Any]) -> tuple[str, str, str, str]:
    """Stable composite key for run inputs: investor, date, amount, id."""
    canon = to_canonical(item)
    return (
        str(canon.get("investor_id", "")),
        str(canon.get("contribution_date", "")),
        str(canon.get("amount", "")),
        str(canon.get("contribution_id", "")),
    )


def compute_run_hash(
    ruleset_version: str,
    inputs: Iterable[Mapping[str, Any]],
    settings: Mapping[str, Any],
    aggregates: Optional[Mapping[str, Any]] = None,
) -> str:
    """Integrity hash of a run.

    The hash covers the ruleset version, the contribution inputs sorted by
    :func:`input_sort_key`, the calculation settings and the historical
    aggregates keyed by investor. Input order does not affect the result.
    """
    ordered = sorted((to_canonical(i) for i in inputs), key=input_sort_key)
    return content_hash({
        "ruleset_version": ruleset_version,
        "inputs": ordered,
        "settings": dict(settings),
        "aggregates": dict(aggregates or {}),
    })
