"""Command-line interface for hearth."""
