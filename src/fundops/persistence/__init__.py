"""Persistence — audit log and data store."""

from fundops.persistence.audit_log import AuditAction, AuditLog, AuditRecord, AuditSink
from fundops.persistence.store import DataStore, InMemoryStore

__all__ = ["AuditAction", "AuditLog", "AuditRecord", "AuditSink", "DataStore", "InMemoryStore"]
