"""Operational HTTP endpoints: health, metrics and dead-letter administration."""
