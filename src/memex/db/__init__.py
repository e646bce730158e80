"""Database layer: connection handle, schema and repositories."""

from memex.db.connection import CheckpointResult, IntegrityReport, Store, connect

__all__ = ["CheckpointResult", "IntegrityReport", "Store", "connect"]
