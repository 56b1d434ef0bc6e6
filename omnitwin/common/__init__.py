"""Shared utilities: logging and error taxonomy."""
