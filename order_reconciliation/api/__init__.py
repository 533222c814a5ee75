"""HTTP API for order reconciliation."""
