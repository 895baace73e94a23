"""Event-driven workflow automation engine."""

__version__ = "1.0.0"
