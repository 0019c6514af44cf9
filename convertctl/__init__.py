"""convertctl - hardware-aware media conversion queue."""

__version__ = "1.0.0"
