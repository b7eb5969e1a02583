"""Read cursors and unread counts."""
