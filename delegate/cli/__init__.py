"""Command-line interface for delegate."""
