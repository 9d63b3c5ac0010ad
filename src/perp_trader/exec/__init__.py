"""Exchange providers and order sizing."""
