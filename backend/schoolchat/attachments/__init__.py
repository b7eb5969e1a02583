"""Attachment upload, storage and orphan collection."""
