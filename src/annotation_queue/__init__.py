"""Task queue and lifecycle state machine for human annotation workflows."""

__version__ = "0.3.0"
