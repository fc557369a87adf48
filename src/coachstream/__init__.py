"""coachstream - resilient streaming pipeline for coaching conversations."""

__version__ = "0.1.0"
