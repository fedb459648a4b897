"""Shared utilities: configuration, map I/O, logging and error types."""
