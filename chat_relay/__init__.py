"""Real-time presence and message relay for two-party chat."""

__version__ = "1.0.0"
