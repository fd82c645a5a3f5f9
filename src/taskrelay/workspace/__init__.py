"""Repository access."""
