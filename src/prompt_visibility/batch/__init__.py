"""Batch job fan-out, micro-batch execution and reconciliation."""
