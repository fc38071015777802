"""Command-line helpers for the Cyber Range Manager."""
