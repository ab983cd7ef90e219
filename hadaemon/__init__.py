"""High-availability cluster daemon core: logging, host weights, lock manager, script service."""

__version__ = "0.1.0"