"""SQLModel storage layer shared by intake and queue repositories."""
