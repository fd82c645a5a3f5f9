"""Permission gateway, allow rules and their persistence."""
