"""Background task processing for the alumni platform."""

__version__ = "0.1.0"
