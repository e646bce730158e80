"""Data models for Memex."""

from memex.models.db import (
    Base,
    ChatSession,
    Entity,
    EntityType,
    ExtractedEntityKind,
    ExtractionState,
    ExtractionStatus,
    Link,
    Message,
    MessageRole,
    Relationship,
    SessionEntity,
    ToolStatus,
    ToolUse,
    Topic,
)

__all__ = [
    "Base",
    "ChatSession",
    "Entity",
    "EntityType",
    "ExtractedEntityKind",
    "ExtractionState",
    "ExtractionStatus",
    "Link",
    "Message",
    "MessageRole",
    "Relationship",
    "SessionEntity",
    "ToolStatus",
    "ToolUse",
    "Topic",
]
