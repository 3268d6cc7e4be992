"""Charge computation from approved agreements."""

from fundops.charges.compute import agreement_rate, compute_charge, resolve_agreement

__all__ = ["agreement_rate", "compute_charge", "resolve_agreement"]
