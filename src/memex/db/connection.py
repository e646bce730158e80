"""
Database connection management for Memex.

A :class:`Store` is the explicit handle every operation receives: it owns
the SQLAlchemy engine for one SQLite file, applies connection PRAGMAs,
hands out sessions with commit/rollback discipline, and runs maintenance
(integrity checks, WAL checkpoints, statistics refresh).

Cross-process coordination relies on SQLite's own locking. A writer that
cannot get the lock within ``busy_timeout_ms`` fails with
:class:`~memex.exceptions.DatabaseLockedError` instead of blocking.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from memex.config import Settings, settings as default_settings
from memex.db.schema import create_schema, rebuild_fts
from memex.exceptions import (
    DatabaseCorruptedError,
    DatabaseError,
    InvalidArgumentError,
    MemexError,
    classify_db_error,
)

logger = logging.getLogger(__name__)

CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")


@dataclass
class CheckpointResult:
    """Row returned by ``PRAGMA wal_checkpoint``."""

    busy: bool
    log_frames: int
    checkpointed_frames: int


@dataclass
class IntegrityReport:
    """Outcome of a structural (and optionally full-text) integrity check."""

    ok: bool
    mode: str  # quick | full
    problems: list[str] = field(default_factory=list)


class Store:
    """
    Handle to one Memex SQLite database.

    Example:
        >>> store = connect(Path("/tmp/memory.db"))
        >>> with store.session() as db:
        ...     db.query(ChatSession).count()
        >>> store.close()
    """

    def __init__(
        self,
        path: Path,
        busy_timeout_ms: int = 5000,
        cache_size_kib: int = 64000,
        echo: bool = False,
    ):
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_kib = cache_size_kib

        self.engine = create_engine(
            f"sqlite:///{self.path}",
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": busy_timeout_ms / 1000,
            },
            pool_pre_ping=True,
        )
        event.listen(self.engine, "connect", self._configure_connection)

        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def _configure_connection(self, dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA cache_size=-{int(self.cache_size_kib)}")
            cursor.execute("PRAGMA temp_store=MEMORY")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        finally:
            cursor.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic cleanup.

        Commits on success, rolls back on any exception. Driver errors are
        re-raised as coded :class:`MemexError` subclasses.

        Yields:
            Session: A SQLAlchemy session

        Example:
            >>> with store.session() as db:
            ...     db.add(ChatSession(...))
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except DBAPIError as e:
            session.rollback()
            raise classify_db_error(e, context={"database": str(self.path)}) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """Create tables, indexes and triggers if missing."""
        with self.engine.begin() as connection:
            create_schema(connection)

    def quick_check(self) -> IntegrityReport:
        """Fast structural check, cheap enough to run on every open."""
        return self._run_check("PRAGMA quick_check(1)", mode="quick")

    def integrity_check(self) -> IntegrityReport:
        """
        Full integrity check including the full-text index.

        Too slow for startup; intended for diagnostics.
        """
        report = self._run_check("PRAGMA integrity_check", mode="full")
        try:
            with self.engine.begin() as connection:
                connection.execute(
                    text("INSERT INTO messages_fts(messages_fts, rank) VALUES ('integrity-check', 1)")
                )
        except DBAPIError as e:
            report.ok = False
            report.problems.append(f"messages_fts: {e.orig}")
        return report

    def _run_check(self, pragma: str, mode: str) -> IntegrityReport:
        try:
            with self.engine.connect() as connection:
                rows = [row[0] for row in connection.exec_driver_sql(pragma).fetchall()]
        except (DBAPIError, sqlite3.DatabaseError) as e:
            raise classify_db_error(e, context={"database": str(self.path)}) from e

        problems = [row for row in rows if row != "ok"]
        return IntegrityReport(ok=not problems, mode=mode, problems=problems)

    def checkpoint(self, mode: str = "PASSIVE", best_effort: bool = False) -> Optional[CheckpointResult]:
        """
        Fold the write-ahead log into the main database file.

        ``PASSIVE`` never blocks and is safe between batches. ``TRUNCATE``
        also resets the WAL file to zero bytes and runs after bulk writes.

        Args:
            mode: One of PASSIVE, FULL, RESTART, TRUNCATE
            best_effort: Return None instead of raising when the database is busy

        Returns:
            CheckpointResult, or None when skipped under contention
        """
        mode = mode.upper()
        if mode not in CHECKPOINT_MODES:
            raise InvalidArgumentError(
                f"Unknown checkpoint mode: {mode}", context={"allowed": list(CHECKPOINT_MODES)}
            )

        try:
            with self.engine.connect() as connection:
                row = connection.exec_driver_sql(f"PRAGMA wal_checkpoint({mode})").fetchone()
        except OperationalError as e:
            if best_effort:
                logger.warning(f"Skipping {mode} checkpoint: {e.orig}")
                return None
            raise classify_db_error(e, context={"database": str(self.path)}) from e

        result = CheckpointResult(
            busy=bool(row[0]), log_frames=int(row[1]), checkpointed_frames=int(row[2])
        )
        logger.debug(f"Checkpoint {mode}: {result}")
        return result

    def optimize(self) -> bool:
        """
        Refresh planner statistics after bulk inserts.

        Best effort: returns False if skipped because the database is busy.
        """
        try:
            with self.engine.begin() as connection:
                connection.exec_driver_sql("ANALYZE")
                connection.exec_driver_sql("PRAGMA optimize")
        except OperationalError as e:
            logger.warning(f"Skipping statistics refresh: {e.orig}")
            return False
        return True

    def rebuild_index(self) -> None:
        """Rebuild the message full-text index from stored messages."""
        with self.engine.begin() as connection:
            rebuild_fts(connection)

    def size_bytes(self) -> int:
        """Size of the main database file as SQLite sees it."""
        with self.engine.connect() as connection:
            page_count = connection.exec_driver_sql("PRAGMA page_count").scalar() or 0
            page_size = connection.exec_driver_sql("PRAGMA page_size").scalar() or 0
        return int(page_count) * int(page_size)

    def close(self) -> None:
        """Truncate the WAL and release all pooled connections."""
        try:
            self.checkpoint("TRUNCATE", best_effort=True)
        except MemexError as e:
            logger.warning(f"Final checkpoint failed: {e}")
        finally:
            self.engine.dispose()


def connect(
    path: Optional[Path] = None,
    config: Optional[Settings] = None,
    verify: bool = True,
) -> Store:
    """
    Open (creating if needed) the Memex database.

    Runs a quick structural check before creating the schema so a damaged
    file is reported instead of being written to.

    Args:
        path: Database file; defaults to the configured location
        config: Settings to read defaults from
        verify: Run ``PRAGMA quick_check`` on open

    Returns:
        Ready-to-use Store

    Raises:
        DatabaseError: If the file cannot be opened
        DatabaseCorruptedError: If the structural check fails
    """
    config = config or default_settings
    db_path = Path(path) if path else config.database_file

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DatabaseError(
            f"Cannot create database directory: {e}", context={"database": str(db_path)}
        ) from e

    store = Store(
        db_path,
        busy_timeout_ms=config.busy_timeout_ms,
        cache_size_kib=config.cache_size_kib,
    )

    try:
        if verify:
            report = store.quick_check()
            if not report.ok:
                raise DatabaseCorruptedError(
                    "Database failed structural integrity check",
                    context={"database": str(db_path), "problems": report.problems},
                )
        store.init_schema()
    except DBAPIError as e:
        store.engine.dispose()
        raise classify_db_error(e, context={"database": str(db_path)}) from e
    except MemexError:
        store.engine.dispose()
        raise

    logger.debug(f"Opened database {db_path}")
    return store
