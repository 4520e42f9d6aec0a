"""Bank transaction categorization and statement reconciliation core."""

__version__ = "0.1.0"
