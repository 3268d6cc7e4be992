"""Canonical serialization and content hashing."""

from fundops.crypto.canonical import (
    canonical_json,
    compute_run_hash,
    content_hash,
    to_canonical,
)

__all__ = ["canonical_json", "compute_run_hash", "content_hash", "to_canonical"]
