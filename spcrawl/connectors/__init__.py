"""Connectors for external document repositories."""
