"""Streaming reader and event classifier for session logs."""
