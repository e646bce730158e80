"""
Best-effort entity and relationship extraction.

Runs inside the sync transaction but under a savepoint: a failure here is
logged and rolled back to the savepoint, and never fails the file.

Relationships produced:
- session -mentions-> topic for the session's project
- session -related_to-> session for sessions that touched the same files
- session -continues-> session when a summary points at a message stored
  under another session
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.orm import Session

from memex.db.repositories import (
    EntityRepository,
    LinkRepository,
    MessageRepository,
    TopicRepository,
)
from memex.models.db import EntityType, ExtractedEntityKind, Relationship
from memex.models.parsed import ExtractedSession, ToolInvocation

logger = logging.getLogger(__name__)

# Tool name -> input keys holding a file or directory path
FILE_PATH_KEYS: dict[str, tuple[str, ...]] = {
    "Read": ("file_path",),
    "Write": ("file_path",),
    "Edit": ("file_path",),
    "MultiEdit": ("file_path",),
    "NotebookEdit": ("notebook_path", "file_path"),
    "Glob": ("path",),
    "Grep": ("path",),
}

PROJECT_TOPIC_WEIGHT = 0.5
CONTINUATION_WEIGHT = 1.0


@dataclass
class SessionPatterns:
    """File and tool usage observed in one session."""

    files: Counter = field(default_factory=Counter)
    tools: Counter = field(default_factory=Counter)


def extract_patterns(invocations: Iterable[ToolInvocation]) -> SessionPatterns:
    """
    Collect touched file paths and tool usage counts.

    Example:
        >>> patterns = extract_patterns([ToolInvocation(id="t1", name="Read",
        ...     input={"file_path": "/src/app.py"})])
        >>> patterns.files["/src/app.py"]
        1
    """
    patterns = SessionPatterns()
    for invocation in invocations:
        patterns.tools[invocation.name] += 1
        for key in FILE_PATH_KEYS.get(invocation.name, ()):
            value: Any = invocation.input.get(key)
            if isinstance(value, str) and value.strip():
                patterns.files[value.strip()] += 1
                break
    return patterns


def project_topic_name(project_name: str) -> str:
    return f"project:{project_name}"


@dataclass
class EntityOutcome:
    files: int = 0
    links: int = 0


def _write_entities(db: Session, extracted: ExtractedSession) -> EntityOutcome:
    entity_repo = EntityRepository(db)
    link_repo = LinkRepository(db)
    topic_repo = TopicRepository(db)
    message_repo = MessageRepository(db)
    session_id = extracted.session_id
    outcome = EntityOutcome()

    # Project membership
    topic = topic_repo.get_or_create(project_topic_name(extracted.project_name))
    link_repo.upsert(
        EntityType.SESSION.value,
        session_id,
        EntityType.TOPIC.value,
        str(topic.id),
        Relationship.MENTIONS.value,
        PROJECT_TOPIC_WEIGHT,
    )
    outcome.links += 1

    # Files touched
    patterns = extract_patterns(extracted.tool_invocations)
    entity_repo.clear_session(session_id)
    for path, frequency in patterns.files.items():
        entity = entity_repo.upsert(ExtractedEntityKind.FILE.value, path)
        entity_repo.link_session(session_id, entity.id, frequency)
    outcome.files = len(patterns.files)

    # Sessions sharing files
    if patterns.files:
        own_count = len(patterns.files)
        for other_id, shared in entity_repo.sessions_sharing(
            session_id, type=ExtractedEntityKind.FILE.value
        ):
            other_count = entity_repo.count_for_session(
                other_id, type=ExtractedEntityKind.FILE.value
            )
            weight = min(1.0, shared / max(own_count, other_count, 1))
            link_repo.upsert(
                EntityType.SESSION.value,
                session_id,
                EntityType.SESSION.value,
                other_id,
                Relationship.RELATED_TO.value,
                round(weight, 4),
            )
            outcome.links += 1

    # Continuations
    for leaf_uuid in extracted.summary_leaf_uuids:
        previous = message_repo.session_of(leaf_uuid)
        if previous and previous != session_id:
            link_repo.upsert(
                EntityType.SESSION.value,
                session_id,
                EntityType.SESSION.value,
                previous,
                Relationship.CONTINUES.value,
                CONTINUATION_WEIGHT,
            )
            outcome.links += 1

    return outcome


def extract_entities(db: Session, extracted: ExtractedSession) -> EntityOutcome:
    """
    Store entities and links for a freshly written session.

    Args:
        db: Session inside the file's write transaction
        extracted: The parsed session

    Returns:
        What was written; empty if extraction failed
    """
    savepoint = db.begin_nested()
    try:
        outcome = _write_entities(db, extracted)
        savepoint.commit()
        return outcome
    except Exception as e:
        savepoint.rollback()
        logger.warning(
            f"Entity extraction failed for session {extracted.session_id}: {e}",
            exc_info=True,
        )
        return EntityOutcome()
