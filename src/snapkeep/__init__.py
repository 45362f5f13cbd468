"""snapkeep - snapshot, verify, and restore organisation data."""

__version__ = "0.1.0"
