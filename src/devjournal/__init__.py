"""Self-improving debugging journal."""

__version__ = "0.1.0"
