"""
Relationship graph queries.

Links are traversed in both directions. Hop 1 covers sessions directly
linked to the source; hop 2 covers sessions reached through one
intermediate entity (a shared topic, or a session linked to a session),
weighted by the product of the two link weights.

Results are deduplicated by session, keeping the lowest hop count and then
the highest weight, and ordered by weight descending.
"""

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from memex.config import Settings, settings as default_settings
from memex.db.connection import Store
from memex.db.repositories import (
    LinkRepository,
    MessageRepository,
    SessionRepository,
    TopicRepository,
)
from memex.exceptions import InvalidArgumentError
from memex.models.db import ChatSession, EntityType

logger = logging.getLogger(__name__)

MAX_HOPS = 2


class RelatedStatus(str, enum.Enum):
    OK = "ok"
    NO_LINKS = "no_links"  # Nothing extracted yet
    NOT_FOUND = "not_found"  # No such source entity


@dataclass
class RelatedSession:
    session_id: str
    weight: float
    hops: int
    project_name: Optional[str] = None
    summary: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RelatedResponse:
    source_type: str
    source_id: str
    status: RelatedStatus
    results: list[RelatedSession] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_type": self.source_type,
            "source_id": self.source_id,
            "status": self.status.value,
            "results": [result.to_dict() for result in self.results],
        }


def _source_exists(db: Session, source_type: str, source_id: str) -> bool:
    if source_type == EntityType.SESSION.value:
        return SessionRepository(db).exists(source_id)
    if source_type == EntityType.MESSAGE.value:
        return MessageRepository(db).get_by_id(source_id) is not None
    if source_id.isdigit() and TopicRepository(db).get(int(source_id)) is not None:
        return True
    return TopicRepository(db).get_by_name(source_id) is not None


def _resolve_topic_id(db: Session, source_id: str) -> str:
    """Topics may be addressed by id or by name; links store the id."""
    if source_id.isdigit():
        return source_id
    topic = TopicRepository(db).get_by_name(source_id)
    return str(topic.id) if topic else source_id


def find_related_with_hops(
    links: LinkRepository, source_type: str, source_id: str, max_hops: int = MAX_HOPS
) -> dict[str, tuple[int, float]]:
    """
    Breadth-first traversal returning reachable sessions.

    Returns:
        Mapping of session id -> (hops, weight), excluding the source itself
    """
    source = (source_type, source_id)
    best: dict[str, tuple[int, float]] = {}
    visited = {source}
    frontier: dict[tuple[str, str], float] = {source: 1.0}

    for hop in range(1, max_hops + 1):
        next_frontier: dict[tuple[str, str], float] = {}
        for (entity_type, entity_id), path_weight in frontier.items():
            for neighbor in links.neighbors(entity_type, entity_id):
                key = (neighbor.type, neighbor.id)
                if key in visited:
                    continue
                weight = path_weight * neighbor.weight
                if weight > next_frontier.get(key, -1.0):
                    next_frontier[key] = weight

        for (entity_type, entity_id), weight in next_frontier.items():
            if entity_type != EntityType.SESSION.value:
                continue
            current = best.get(entity_id)
            if current is None or (hop, -weight) < (current[0], -current[1]):
                best[entity_id] = (hop, weight)

        visited.update(next_frontier)
        frontier = next_frontier

    return best


class RelatedService:
    """Relationship queries over a :class:`Store`."""

    def __init__(self, store: Store, config: Optional[Settings] = None):
        self.store = store
        self.config = config or default_settings

    def related(
        self,
        source_type: str,
        source_id: str,
        limit: Optional[int] = None,
        max_hops: int = MAX_HOPS,
    ) -> RelatedResponse:
        """
        Sessions related to an entity.

        Args:
            source_type: session, message or topic
            source_id: Entity id (topics also accept their name)
            limit: Maximum results
            max_hops: Traversal depth, 1 or 2

        Returns:
            RelatedResponse whose status separates "no such entity" from
            "nothing extracted yet"
        """
        valid_types = {member.value for member in EntityType}
        if source_type not in valid_types:
            raise InvalidArgumentError(
                f"Unknown source type: {source_type}",
                context={"allowed": sorted(valid_types)},
            )
        if max_hops not in (1, 2):
            raise InvalidArgumentError(f"max_hops must be 1 or 2, got {max_hops}")
        if limit is not None and limit < 1:
            raise InvalidArgumentError(f"Limit must be positive, got {limit}")

        with self.store.session() as db:
            if not _source_exists(db, source_type, source_id):
                return RelatedResponse(source_type, source_id, RelatedStatus.NOT_FOUND)

            links = LinkRepository(db)
            if links.is_empty():
                return RelatedResponse(source_type, source_id, RelatedStatus.NO_LINKS)

            lookup_id = (
                _resolve_topic_id(db, source_id)
                if source_type == EntityType.TOPIC.value
                else source_id
            )
            reachable = find_related_with_hops(links, source_type, lookup_id, max_hops)

            ordered = sorted(
                reachable.items(), key=lambda item: (-item[1][1], item[1][0], item[0])
            )
            if limit is not None:
                ordered = ordered[:limit]

            sessions = {
                session.id: session
                for session in db.query(ChatSession)
                .filter(ChatSession.id.in_([session_id for session_id, _ in ordered]))
                .all()
            } if ordered else {}

            results = [
                RelatedSession(
                    session_id=session_id,
                    weight=round(weight, 6),
                    hops=hops,
                    project_name=sessions[session_id].project_name if session_id in sessions else None,
                    summary=sessions[session_id].summary if session_id in sessions else None,
                )
                for session_id, (hops, weight) in ordered
            ]

        return RelatedResponse(source_type, source_id, RelatedStatus.OK, results)
