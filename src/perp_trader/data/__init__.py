"""Exchange market data and candidate selection."""
