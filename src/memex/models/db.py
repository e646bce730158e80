"""
SQLAlchemy database models for Memex.

These models represent the relational half of the store. The full-text
indexes and the triggers that keep them in sync live in
:mod:`memex.db.schema`, because SQLAlchemy has no construct for FTS5
virtual tables.

Timestamps are stored as fixed-width ISO-8601 UTC strings
(``2025-01-01T10:00:00.000Z``) so they sort and compare lexically in raw SQL.
"""

import enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class MessageRole(str, enum.Enum):
    """Author of a stored message."""

    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ExtractionStatus(str, enum.Enum):
    """Lifecycle of one source file's extraction."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class EntityType(str, enum.Enum):
    """Link endpoint kinds."""

    SESSION = "session"
    MESSAGE = "message"
    TOPIC = "topic"


class Relationship(str, enum.Enum):
    MENTIONS = "mentions"  # session -> topic
    RELATED_TO = "related_to"  # session -> session sharing work
    CONTINUES = "continues"  # session -> session resumed from it


class ExtractedEntityKind(str, enum.Enum):
    """Kinds of best-effort extracted entities."""

    CONCEPT = "concept"
    FILE = "file"
    DECISION = "decision"
    TERM = "term"


def _in_check(column: str, enum_cls: type[enum.Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class ChatSession(Base):
    """One continuous assistant conversation (one source file)."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_path_encoded: Mapped[str] = mapped_column(String, nullable=False)
    project_path_decoded: Mapped[str] = mapped_column(String, nullable=False)
    project_name: Mapped[str] = mapped_column(String, nullable=False)
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[Optional[str]] = mapped_column(String)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    format_version: Mapped[Optional[str]] = mapped_column(String)  # Host tool version
    created_at: Mapped[str] = mapped_column(
        String, server_default=func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
    )
    updated_at: Mapped[str] = mapped_column(
        String, server_default=func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
    )

    messages: Mapped[list["Message"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.timestamp",
    )

    __table_args__ = (
        Index("idx_sessions_project_name", "project_name"),
        Index("idx_sessions_start_time", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<ChatSession(id={self.id}, project={self.project_name}, messages={self.message_count})>"


class Message(Base):
    """
    One conversational turn.

    ``seq`` is the integer rowid the external-content FTS index points at.
    AUTOINCREMENT keeps rowids from being reused after deletes, which would
    otherwise confuse the index.
    """

    __tablename__ = "messages_meta"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String)  # Weak reference, no FK
    tool_use_ids: Mapped[Optional[list[str]]] = mapped_column(JSON)

    session: Mapped["ChatSession"] = relationship(back_populates="messages")

    __table_args__ = (
        CheckConstraint(_in_check("role", MessageRole), name="ck_messages_role"),
        Index("idx_messages_session", "session_id"),
        Index("idx_messages_timestamp", "timestamp"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role={self.role}, session={self.session_id})>"


class ToolUse(Base):
    """One tool invocation made by the assistant."""

    __tablename__ = "tool_uses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    input: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    timestamp: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ToolStatus.PENDING.value
    )
    result: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(_in_check("status", ToolStatus), name="ck_tool_uses_status"),
        Index("idx_tool_uses_session", "session_id"),
        Index("idx_tool_uses_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<ToolUse(id={self.id}, name={self.name}, status={self.status})>"


class Link(Base):
    """
    Directed, weighted relationship between two entities.

    Endpoints are weak (type, id) references: deleting an endpoint does not
    cascade to its links.
    """

    __tablename__ = "links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_type: Mapped[str] = mapped_column(String, nullable=False)
    source_id: Mapped[str] = mapped_column(String, nullable=False)
    target_type: Mapped[str] = mapped_column(String, nullable=False)
    target_id: Mapped[str] = mapped_column(String, nullable=False)
    relationship: Mapped[str] = mapped_column(String, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[str] = mapped_column(
        String, server_default=func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
    )

    __table_args__ = (
        CheckConstraint(_in_check("source_type", EntityType), name="ck_links_source_type"),
        CheckConstraint(_in_check("target_type", EntityType), name="ck_links_target_type"),
        CheckConstraint(_in_check("relationship", Relationship), name="ck_links_relationship"),
        CheckConstraint("weight >= 0.0 AND weight <= 1.0", name="ck_links_weight"),
        UniqueConstraint(
            "source_type",
            "source_id",
            "target_type",
            "target_id",
            "relationship",
            name="uq_links_endpoints",
        ),
        Index("idx_links_source", "source_type", "source_id"),
        Index("idx_links_target", "target_type", "target_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Link({self.source_type}:{self.source_id} -{self.relationship}-> "
            f"{self.target_type}:{self.target_id}, weight={self.weight})>"
        )


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String, server_default=func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
    )

    def __repr__(self) -> str:
        return f"<Topic(id={self.id}, name={self.name})>"


class Entity(Base):
    """Best-effort extracted concept, file, decision or term."""

    __tablename__ = "entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[str] = mapped_column(
        String, server_default=func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
    )

    __table_args__ = (
        CheckConstraint(_in_check("type", ExtractedEntityKind), name="ck_entities_type"),
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="ck_entities_confidence"),
        UniqueConstraint("type", "name", name="uq_entities_type_name"),
    )

    def __repr__(self) -> str:
        return f"<Entity(type={self.type}, name={self.name})>"


class SessionEntity(Base):
    """How often a session touched an entity."""

    __tablename__ = "session_entities"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True
    )
    frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (Index("idx_session_entities_entity", "entity_id"),)


class ExtractionState(Base):
    """Per-source-file extraction status and fingerprint."""

    __tablename__ = "extraction_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_path: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ExtractionStatus.PENDING.value
    )
    started_at: Mapped[Optional[str]] = mapped_column(String)
    completed_at: Mapped[Optional[str]] = mapped_column(String)
    messages_extracted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    file_mtime_ns: Mapped[Optional[int]] = mapped_column(Integer)
    file_size: Mapped[Optional[int]] = mapped_column(Integer)
    format_version: Mapped[Optional[str]] = mapped_column(String)

    __table_args__ = (
        CheckConstraint(
            _in_check("status", ExtractionStatus), name="ck_extraction_state_status"
        ),
        Index("idx_extraction_state_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<ExtractionState(path={self.session_path}, status={self.status})>"
