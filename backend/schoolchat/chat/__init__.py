"""Server-side orchestration of the messaging core."""
