"""Validated row source consumed by the task creation pipeline."""
