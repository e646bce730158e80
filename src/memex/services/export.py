"""
Database backup and restore through JSON files.

An export is one JSON document with every stored row grouped by table, a
format version and per-table counts. Importing goes back through the
repositories with insert-or-ignore semantics: messages reach the full-text
index through the same triggers a sync fires, and importing a file twice
leaves the store unchanged.

Merging (``force``) keeps the exported integer ids of topics and entities.
If the target store already uses one of those ids for a different row, the
imported row is skipped and references to it resolve to the stored one.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, InterfaceError, ProgrammingError
from sqlalchemy.orm import Session

from memex.db.connection import Store
from memex.db.repositories import BaseRepository
from memex.exceptions import (
    DatabaseCorruptedError,
    InvalidArgumentError,
    InvalidExportError,
    MemexError,
)
from memex.models.db import (
    ChatSession,
    Entity,
    ExtractionState,
    Link,
    Message,
    SessionEntity,
    ToolUse,
    Topic,
)
from memex.parsers.utils import to_iso

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"

# (section, model, columns the target store assigns itself), in foreign key order
SECTIONS = (
    ("sessions", ChatSession, ()),
    ("messages", Message, ("seq",)),
    ("tool_uses", ToolUse, ()),
    ("topics", Topic, ()),
    ("entities", Entity, ()),
    ("session_entities", SessionEntity, ()),
    ("links", Link, ("id",)),
    ("extraction_state", ExtractionState, ("id",)),
)

REQUIRED_SECTIONS = ("sessions", "messages", "tool_uses", "topics", "entities", "links")

# Bound on SQL variables per IN (...) lookup
_ID_CHUNK = 500


@dataclass
class ExportManifest:
    """Header of a validated export file."""

    version: str
    exported_at: Optional[str]
    stats: dict[str, int]


@dataclass
class ExportResult:
    path: str
    counts: dict[str, int]
    bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportResult:
    """Rows read from the file and rows actually inserted, per section."""

    path: str
    version: str
    cleared: bool
    read: dict[str, int] = field(default_factory=dict)
    inserted: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def validate_export(data: Any) -> ExportManifest:
    """
    Check that decoded JSON has the shape of an export.

    Raises:
        InvalidExportError: Naming the first problem found
    """
    if not isinstance(data, dict):
        raise InvalidExportError(f"Export must be a JSON object, got {type(data).__name__}")

    version = data.get("version")
    if not isinstance(version, str) or not version:
        raise InvalidExportError("Missing or invalid version field")
    if version.split(".")[0] != EXPORT_FORMAT_VERSION.split(".")[0]:
        raise InvalidExportError(
            f"Unsupported export version {version}",
            context={"supported": EXPORT_FORMAT_VERSION},
        )

    if not isinstance(data.get("stats"), dict):
        raise InvalidExportError("Missing or invalid stats object")

    for name, _, _ in SECTIONS:
        rows = data.get(name)
        if rows is None and name not in REQUIRED_SECTIONS:
            continue
        if not isinstance(rows, list):
            raise InvalidExportError(f"Missing or invalid {name} array")
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                raise InvalidExportError(
                    f"Invalid {name} entry at index {index}: expected an object"
                )

    return ExportManifest(
        version=version,
        exported_at=data.get("exported_at"),
        stats=data["stats"],
    )


def load_export_file(path: Union[str, Path]) -> dict[str, Any]:
    """
    Read and validate an export file.

    Returns:
        The decoded document

    Raises:
        InvalidExportError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    context = {"path": str(path)}
    if not path.is_file():
        raise InvalidExportError("File does not exist", context=context)

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise InvalidExportError(f"Cannot read file: {e.strerror or e}", context=context) from e
    except (ValueError, RecursionError) as e:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors
        raise InvalidExportError(f"Failed to parse file: {e}", context=context) from e

    validate_export(data)
    return data


def validate_export_file(path: Union[str, Path]) -> ExportManifest:
    """Validate an export file without touching any store."""
    return validate_export(load_export_file(path))


class ExportService:
    """Back up a :class:`Store` to JSON and restore it."""

    def __init__(self, store: Store):
        self.store = store

    def export_to_json(self, path: Union[str, Path]) -> ExportResult:
        """
        Write every stored row to ``path``.

        Raises:
            InvalidArgumentError: If the parent directory does not exist
        """
        path = Path(path)
        if not path.parent.is_dir():
            raise InvalidArgumentError(
                f"Directory does not exist: {path.parent}", context={"path": str(path)}
            )

        sections: dict[str, list[dict[str, Any]]] = {}
        with self.store.session() as db:
            for name, model, _ in SECTIONS:
                sections[name] = BaseRepository(model, db).dump()

        counts = {name: len(rows) for name, rows in sections.items()}
        document = {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": to_iso(datetime.now(timezone.utc)),
            "stats": counts,
            **sections,
        }
        content = json.dumps(document, indent=2, ensure_ascii=False)

        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise MemexError(
                f"Cannot write export file: {e.strerror or e}", context={"path": str(path)}
            ) from e

        size = len(content.encode("utf-8"))
        logger.info(f"Exported {counts['sessions']} sessions, {counts['messages']} messages to {path}")
        return ExportResult(path=str(path), counts=counts, bytes=size)

    def import_from_json(
        self, path: Union[str, Path], clear: bool = False, force: bool = False
    ) -> ImportResult:
        """
        Load an export file into the store in one transaction.

        Args:
            path: Export file
            clear: Delete all stored data first
            force: Merge into a store that already holds sessions

        Raises:
            InvalidExportError: If the file is invalid or its rows violate constraints
            InvalidArgumentError: If the store holds data and neither flag is set
            DatabaseCorruptedError: If imported rows are missing afterwards
        """
        data = load_export_file(path)
        manifest = validate_export(data)
        result = ImportResult(path=str(path), version=manifest.version, cleared=clear)

        with self.store.session() as db:
            if not clear and not force and self._has_data(db):
                raise InvalidArgumentError(
                    "Database already contains sessions; use --clear to replace them "
                    "or --force to merge",
                    context={"path": str(path)},
                )
            if clear:
                self._clear(db)

            for name, model, assigned in SECTIONS:
                rows = data.get(name) or []
                try:
                    inserted = BaseRepository(model, db).insert_rows(rows, exclude=assigned)
                except (IntegrityError, InterfaceError, ProgrammingError) as e:
                    raise InvalidExportError(
                        f"Invalid {name} rows: {e.orig}", context={"path": str(path)}
                    ) from e
                result.read[name] = len(rows)
                result.inserted[name] = inserted

            self._verify(db, data)

        logger.info(
            f"Imported {result.inserted['sessions']} sessions, "
            f"{result.inserted['messages']} messages from {path}"
        )
        return result

    def _has_data(self, db: Session) -> bool:
        return db.query(ChatSession.id).first() is not None

    def _clear(self, db: Session) -> None:
        # Deleting messages fires the triggers that drop them from the index
        for model in (SessionEntity, Link, Message, ToolUse, ChatSession, Entity, Topic, ExtractionState):
            db.query(model).delete(synchronize_session=False)
        logger.info("Cleared existing data before import")

    def _verify(self, db: Session, data: dict[str, Any]) -> None:
        """Every exported session and message must now be stored and indexed."""
        for name, column in (("sessions", ChatSession.id), ("messages", Message.id)):
            ids = list({row["id"] for row in data[name] if isinstance(row.get("id"), str)})
            present = 0
            for start in range(0, len(ids), _ID_CHUNK):
                chunk = ids[start : start + _ID_CHUNK]
                present += db.query(func.count(column)).filter(column.in_(chunk)).scalar() or 0
            if present != len(ids):
                raise DatabaseCorruptedError(
                    f"Import verification failed: {len(ids) - present} of {len(ids)} {name} missing"
                )

        stored = db.query(func.count(Message.seq)).scalar() or 0
        indexed = db.execute(text("SELECT count(*) FROM messages_fts_docsize")).scalar() or 0
        if stored != indexed:
            raise DatabaseCorruptedError(
                "Import verification failed: full-text index out of step",
                context={"messages": stored, "indexed": indexed},
            )
