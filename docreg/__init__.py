"""Document register automation services."""
