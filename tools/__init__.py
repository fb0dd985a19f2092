"""Command-line tools for the RRL ledger."""
