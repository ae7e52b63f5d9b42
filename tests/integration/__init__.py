"""CLI and cross-module integration tests."""
