"""Hybrid listing search and vector index maintenance services."""

__version__ = "2.0.0"
