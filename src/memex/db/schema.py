"""
Full-text index schema.

SQLAlchemy creates the relational tables from :mod:`memex.models.db`. The
FTS5 virtual tables and the triggers that keep them synchronized with
``messages_meta`` and ``sessions`` are raw DDL.

``messages_fts`` is an external-content index: it stores only the index,
and reads message text from ``messages_meta`` through the ``seq`` rowid.
The trigram tokenizer makes any substring of three or more characters
searchable (``auth`` matches ``OAuth``) while still supporting phrases,
boolean operators and bm25 ranking.
"""

import logging

from sqlalchemy import Connection, text
from sqlalchemy.exc import OperationalError

from memex.exceptions import DatabaseError
from memex.models.db import Base

logger = logging.getLogger(__name__)

FTS_TOKENIZER = "trigram"

FTS_DDL = [
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
        content,
        content='messages_meta',
        content_rowid='seq',
        tokenize='{FTS_TOKENIZER}'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_ai AFTER INSERT ON messages_meta BEGIN
        INSERT INTO messages_fts(rowid, content) VALUES (new.seq, new.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_ad AFTER DELETE ON messages_meta BEGIN
        INSERT INTO messages_fts(messages_fts, rowid, content)
        VALUES ('delete', old.seq, old.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_au AFTER UPDATE ON messages_meta BEGIN
        INSERT INTO messages_fts(messages_fts, rowid, content)
        VALUES ('delete', old.seq, old.content);
        INSERT INTO messages_fts(rowid, content) VALUES (new.seq, new.content);
    END
    """,
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
        session_id UNINDEXED,
        summary,
        tokenize='{FTS_TOKENIZER}'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sessions_fts_ai AFTER INSERT ON sessions
    WHEN new.summary IS NOT NULL BEGIN
        INSERT INTO sessions_fts(session_id, summary) VALUES (new.id, new.summary);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sessions_fts_au AFTER UPDATE OF summary ON sessions BEGIN
        DELETE FROM sessions_fts WHERE session_id = old.id;
        INSERT INTO sessions_fts(session_id, summary)
        SELECT new.id, new.summary WHERE new.summary IS NOT NULL;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sessions_fts_ad AFTER DELETE ON sessions BEGIN
        DELETE FROM sessions_fts WHERE session_id = old.id;
    END
    """,
]


def check_fts5_support(connection: Connection) -> None:
    """
    Verify that the SQLite build provides FTS5 with the trigram tokenizer.

    Raises:
        DatabaseError: If FTS5 or the tokenizer is unavailable
    """
    try:
        connection.execute(
            text(f"CREATE VIRTUAL TABLE IF NOT EXISTS temp.fts5_check USING fts5(x, tokenize='{FTS_TOKENIZER}')")
        )
        connection.execute(text("DROP TABLE temp.fts5_check"))
    except OperationalError as e:
        raise DatabaseError(
            f"SQLite FTS5 with the {FTS_TOKENIZER} tokenizer is not available: {e.orig}"
        ) from e


def create_schema(connection: Connection) -> None:
    """
    Create all tables, full-text indexes and triggers. Idempotent.

    Args:
        connection: Open SQLAlchemy connection; the caller commits
    """
    check_fts5_support(connection)
    Base.metadata.create_all(bind=connection)
    for statement in FTS_DDL:
        connection.execute(text(statement))
    logger.debug("Schema verified")


def rebuild_fts(connection: Connection) -> None:
    """Rebuild the message index from ``messages_meta``."""
    connection.execute(text("INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')"))
