"""Performance ledger and decision journal."""
