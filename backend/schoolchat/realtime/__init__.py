"""Realtime pub/sub notifier and WebSocket transport."""
