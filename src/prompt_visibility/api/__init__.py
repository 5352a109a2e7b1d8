"""HTTP surface for batch job creation, execution and reconciliation."""
