"""Day-ahead electricity price synchronization engine."""

__version__ = "0.1.0"
