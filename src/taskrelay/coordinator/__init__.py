"""Phase orchestration."""
