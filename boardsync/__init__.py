"""Real-time collaborative synchronization for task boards."""

__version__ = "1.0.0"
