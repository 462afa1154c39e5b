"""On-disk records and IO helpers for session state."""
