"""Bidirectional backup sync between a note collection and a directory."""

__version__ = "0.1.0"
