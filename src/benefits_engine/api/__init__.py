"""HTTP API for the benefits ledger."""
