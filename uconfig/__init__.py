"""uconfig - versioned, audited, cached configuration service."""

__version__ = "0.1.0"
