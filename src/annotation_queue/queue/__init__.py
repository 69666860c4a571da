"""Task queue, lifecycle state machine and assignment engine."""
