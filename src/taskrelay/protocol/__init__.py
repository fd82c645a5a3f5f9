"""Data model, atomic file IO and advisory locks."""
