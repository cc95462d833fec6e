"""RIGALLOC - equipment allocation and conflict resolution for field jobs."""

__version__ = "0.1.0"
