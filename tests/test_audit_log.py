"""Tests for the audit log — proves append-only records, replay protection and tamper detection."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from fundops.persistence.audit_log import AuditAction, AuditLog, AuditRecord


def _now() -> datetime:
    return datetime(2025, 4, 1, 9, 0, 0, tzinfo=timezone.utc)


def _record(entity_id: str = "charge_1", action: AuditAction = AuditAction.CHARGE_SUBMITTED) -> AuditRecord:
    return AuditRecord.create(
        "charge", entity_id, action, "fin-1",
        {"net_amount": Decimal("700.00"), "residual": Decimal("0")},
        timestamp_utc=_now(),
    )


class TestAuditRecord:
    def test_hash_is_prefixed(self) -> None:
        record = _record()
        assert record.record_hash.startswith("sha256:")
        assert record.timestamp_utc == "2025-04-01T09:00:00Z"

    def test_metadata_is_canonical(self) -> None:
        assert _record().metadata == {"net_amount": "700", "residual": "0"}

    def test_same_content_same_hash(self) -> None:
        a = AuditRecord.create("run", "r1", AuditAction.RUN_CREATED, "fin-1", {}, _now(), record_id="audit_x")
        b = AuditRecord.create("run", "r1", AuditAction.RUN_CREATED, "fin-1", {}, _now(), record_id="audit_x")
        assert a.record_hash == b.record_hash


class TestAuditLog:
    def test_append_and_filter(self) -> None:
        log = AuditLog()
        log.append(_record("charge_1"))
        log.append(_record("charge_2"))
        log.append(_record("charge_1", AuditAction.CHARGE_APPROVED))
        assert log.count == 3
        assert len(log.records(entity_id="charge_1")) == 2
        assert len(log.records(action=AuditAction.CHARGE_APPROVED)) == 1

    def test_duplicate_id_rejected(self) -> None:
        log = AuditLog()
        record = _record()
        log.append(record)
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(record)
        assert log.count == 1

    def test_batch_with_duplicate_keeps_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = AuditLog(storage_path=path)
        first = _record("charge_1")
        log.append(first)
        with pytest.raises(ValueError, match="Duplicate"):
            log.append_many([_record("charge_2"), first])
        assert log.count == 1
        assert AuditLog(storage_path=path).count == 1

    def test_batch_appended_in_order(self) -> None:
        log = AuditLog()
        batch = [_record("charge_1", AuditAction.CREDIT_APPLIED), _record("charge_1")]
        log.append_many(batch)
        assert [r.action for r in log.records()] == [AuditAction.CREDIT_APPLIED, AuditAction.CHARGE_SUBMITTED]


class TestPersistence:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = AuditLog(storage_path=path)
        log.append(_record("charge_1"))
        log.append(_record("charge_2"))

        reloaded = AuditLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.records()[0].record_hash == log.records()[0].record_hash
        assert reloaded.records()[0].action == AuditAction.CHARGE_SUBMITTED

    def test_tampered_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        AuditLog(storage_path=path).append(_record())
        data = json.loads(path.read_text(encoding="utf-8"))
        data["metadata"]["net_amount"] = "1"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            AuditLog(storage_path=path)

    def test_duplicate_line_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        AuditLog(storage_path=path).append(_record())
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate audit record ID on recovery"):
            AuditLog(storage_path=path)

    def test_blank_lines_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        AuditLog(storage_path=path).append(_record())
        path.write_text(path.read_text(encoding="utf-8") + "\n\n", encoding="utf-8")
        assert AuditLog(storage_path=path).count == 1
