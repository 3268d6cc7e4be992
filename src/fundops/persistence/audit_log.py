"""Append-only audit log — the record of every workflow action.

Every run and charge transition, credit application and reversal, and
every internal failure produces an AuditRecord. Records are immutable
once written; each carries a SHA-256 over its canonical JSON.

The log can be persisted to a JSONL file (one JSON object per line).
Loading verifies every record hash and rejects duplicate record ids.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence
from uuid import uuid4

from fundops.crypto.canonical import to_canonical


class AuditAction(str, enum.Enum):
    """Classification of audited actions."""
    # Runs
    RUN_CREATED = "run.created"
    RUN_REVIEWED = "run.reviewed"
    RUN_APPROVED = "run.approved"
    RUN_EXPORTED = "run.exported"
    RUN_FAILED = "run.failed"
    # Charges
    CHARGE_COMPUTED = "charge.computed"
    CHARGE_SUBMITTED = "charge.submitted"
    CHARGE_APPROVED = "charge.approved"
    CHARGE_REJECTED = "charge.rejected"
    CHARGE_PAID = "charge.paid"
    CHARGE_REOPENED = "charge.reopened"
    # Credits
    CREDIT_APPLIED = "credit.applied"
    CREDIT_REVERSED = "credit.reversed"
    # Agreements
    AGREEMENT_APPROVED = "agreement.approved"
    AGREEMENT_AMENDED = "agreement.amended"
    # Failures
    ACTION_FAILED = "action.failed"


def _record_hash(
    record_id: str,
    entity: str,
    entity_id: str,
    action: str,
    actor_id: str,
    timestamp_utc: str,
    metadata: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "record_id": record_id,
            "entity": entity,
            "entity_id": entity_id,
            "action": action,
            "actor_id": actor_id,
            "timestamp_utc": timestamp_utc,
            "metadata": metadata,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class AuditRecord:
    """A single immutable audit entry."""
    record_id: str
    entity: str
    entity_id: str
    action: AuditAction
    actor_id: str
    timestamp_utc: str
    metadata: dict[str, Any]
    record_hash: str

    @staticmethod
    def create(
        entity: str,
        entity_id: str,
        action: AuditAction,
        actor_id: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp_utc: Optional[datetime] = None,
        record_id: Optional[str] = None,
    ) -> AuditRecord:
        """Create a record with its hash computed."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        rid = record_id or f"audit_{uuid4().hex[:16]}"
        meta = to_canonical(metadata or {})
        return AuditRecord(
            record_id=rid,
            entity=entity,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            timestamp_utc=ts_str,
            metadata=meta,
            record_hash=_record_hash(rid, entity, entity_id, action.value, actor_id, ts_str, meta),
        )


class AuditSink(Protocol):
    """Anything that can durably accept audit records."""

    def append(self, record: AuditRecord) -> None:
        ...

    def append_many(self, records: Sequence[AuditRecord]) -> None:
        ...


class AuditLog:
    """Append-only audit log with optional JSONL persistence.

    Records can only be appended, never modified or deleted.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._records: list[AuditRecord] = []
        self._record_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, record: AuditRecord) -> None:
        """Append a record.

        Raises ValueError if record_id is a duplicate (replay protection).
        """
        self.append_many([record])

    def append_many(self, records: Sequence[AuditRecord]) -> None:
        """Append records as one batch: all of them are kept or none are.

        Duplicate ids are checked for the whole batch before anything is
        written, and the file receives the batch in a single write.
        """
        with self._lock:
            seen = set(self._record_ids)
            for record in records:
                if record.record_id in seen:
                    raise ValueError(f"Duplicate audit record ID: {record.record_id}")
                seen.add(record.record_id)
            if self._storage_path:
                self._append_to_file(records)
            self._records.extend(records)
            self._record_ids.update(r.record_id for r in records)

    def records(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> list[AuditRecord]:
        """Return records, optionally filtered by entity id and action."""
        result = list(self._records)
        if entity_id is not None:
            result = [r for r in result if r.entity_id == entity_id]
        if action is not None:
            result = [r for r in result if r.action == action]
        return result

    @property
    def count(self) -> int:
        return len(self._records)

    def _append_to_file(self, records: Sequence[AuditRecord]) -> None:
        lines = []
        for record in records:
            data = {
                "record_id": record.record_id,
                "entity": record.entity,
                "entity_id": record.entity_id,
                "action": record.action.value,
                "actor_id": record.actor_id,
                "timestamp_utc": record.timestamp_utc,
                "metadata": record.metadata,
                "record_hash": record.record_hash,
            }
            lines.append(json.dumps(data, sort_keys=True, ensure_ascii=False) + "\n")
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

    def _load_from_file(self, path: Path) -> None:
        """Load records from JSONL with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate record IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                record_id = data["record_id"]

                if record_id in self._record_ids:
                    raise ValueError(
                        f"Duplicate audit record ID on recovery (line {line_num}): {record_id}"
                    )

                expected = _record_hash(
                    record_id,
                    data["entity"],
                    data["entity_id"],
                    data["action"],
                    data["actor_id"],
                    data["timestamp_utc"],
                    data["metadata"],
                )
                if data["record_hash"] != expected:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): record {record_id} "
                        f"stored hash {data['record_hash']} != computed {expected}"
                    )

                self._records.append(AuditRecord(
                    record_id=record_id,
                    entity=data["entity"],
                    entity_id=data["entity_id"],
                    action=AuditAction(data["action"]),
                    actor_id=data["actor_id"],
                    timestamp_utc=data["timestamp_utc"],
                    metadata=data["metadata"],
                    record_hash=data["record_hash"],
                ))
                self._record_ids.add(record_id)
