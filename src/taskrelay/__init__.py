"""taskrelay: drive coding-agent CLIs through implement, test, review and fix phases."""

__version__ = "0.1.0"
