"""Sync pipeline: parse, extract and store session files."""
