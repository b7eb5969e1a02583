"""Per-user chat list."""
