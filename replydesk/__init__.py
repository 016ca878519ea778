"""Auto-reply service for a single business messaging session."""

__version__ = "1.0.0"
