"""Background task lifecycle tracking and status reconciliation."""

__version__ = "0.3.0"
