"""Tournament orchestration services."""
