"""Risk admission gate."""
