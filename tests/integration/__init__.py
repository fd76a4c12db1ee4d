"""Integration tests for fixflow."""
