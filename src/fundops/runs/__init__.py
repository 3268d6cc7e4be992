"""Run aggregation — totals, scope breakdown and integrity hash."""

from fundops.runs.aggregator import RunAggregator, compute_totals, scope_breakdown

__all__ = ["RunAggregator", "compute_totals", "scope_breakdown"]
