"""Agent CLI backends."""
