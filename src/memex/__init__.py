"""Memex: permanent, searchable memory for AI coding assistant sessions."""

__version__ = "0.1.0"
