"""Shared utilities: logging setup, retry with backoff, reply parsing."""
