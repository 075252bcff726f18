"""Calendar synchronization and study-session scheduling engine."""

__version__ = "0.4.0"
