"""
Entity repository.

Entities are deduplicated on (type, lower(name)); re-extracting an entity
keeps the highest confidence seen.
"""

from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import Entity, SessionEntity


class EntityRepository(BaseRepository[Entity]):
    """Repository for Entity and SessionEntity models."""

    def __init__(self, session: Session):
        super().__init__(Entity, session)

    def find(self, type: str, name: str) -> Optional[Entity]:
        """Case-insensitive lookup by type and name."""
        return (
            self.session.query(Entity)
            .filter(Entity.type == type, func.lower(Entity.name) == name.lower())
            .first()
        )

    def upsert(
        self,
        type: str,
        name: str,
        confidence: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Entity:
        """
        Create an entity or merge into an existing one.

        Returns:
            The stored entity
        """
        existing = self.find(type, name)
        if existing is None:
            return self.create(type=type, name=name, confidence=confidence, metadata_=metadata)

        if confidence > existing.confidence:
            existing.confidence = confidence
        if metadata:
            existing.metadata_ = {**(existing.metadata_ or {}), **metadata}
        self.session.flush()
        return existing

    def link_session(self, session_id: str, entity_id: int, frequency: int = 1) -> None:
        """Record that a session touched an entity ``frequency`` times."""
        statement = insert(SessionEntity).values(
            session_id=session_id, entity_id=entity_id, frequency=frequency
        )
        statement = statement.on_conflict_do_update(
            index_elements=["session_id", "entity_id"],
            set_={"frequency": statement.excluded.frequency},
        )
        self.session.execute(statement)

    def clear_session(self, session_id: str) -> int:
        """Remove all entity associations of a session. Returns rows deleted."""
        return (
            self.session.query(SessionEntity)
            .filter(SessionEntity.session_id == session_id)
            .delete(synchronize_session=False)
        )

    def for_session(self, session_id: str, type: Optional[str] = None) -> List[tuple[Entity, int]]:
        """
        Entities touched by a session, most frequent first.

        Returns:
            List of (entity, frequency)
        """
        query = (
            self.session.query(Entity, SessionEntity.frequency)
            .join(SessionEntity, SessionEntity.entity_id == Entity.id)
            .filter(SessionEntity.session_id == session_id)
        )
        if type:
            query = query.filter(Entity.type == type)
        rows = query.order_by(SessionEntity.frequency.desc(), Entity.name).all()
        return [(entity, frequency) for entity, frequency in rows]

    def sessions_sharing(self, session_id: str, type: Optional[str] = None) -> List[tuple[str, int]]:
        """
        Other sessions that touched the same entities.

        Returns:
            List of (other session id, number of shared entities), most shared first
        """
        mine = self.session.query(SessionEntity.entity_id).filter(
            SessionEntity.session_id == session_id
        )
        if type:
            mine = mine.join(Entity, Entity.id == SessionEntity.entity_id).filter(
                Entity.type == type
            )

        rows = (
            self.session.query(SessionEntity.session_id, func.count(SessionEntity.entity_id))
            .filter(
                SessionEntity.entity_id.in_(mine.scalar_subquery()),
                SessionEntity.session_id != session_id,
            )
            .group_by(SessionEntity.session_id)
            .order_by(func.count(SessionEntity.entity_id).desc(), SessionEntity.session_id)
            .all()
        )
        return [(other, shared) for other, shared in rows]

    def count_for_session(self, session_id: str, type: Optional[str] = None) -> int:
        query = self.session.query(SessionEntity).filter(SessionEntity.session_id == session_id)
        if type:
            query = query.join(Entity, Entity.id == SessionEntity.entity_id).filter(
                Entity.type == type
            )
        return query.count()

    def top_for_sessions(
        self, session_ids: List[str], type: Optional[str] = None, limit: int = 10
    ) -> List[tuple[str, int]]:
        """
        Entities most touched across a set of sessions.

        Returns:
            List of (entity name, total frequency)
        """
        if not session_ids:
            return []
        total = func.sum(SessionEntity.frequency)
        query = (
            self.session.query(Entity.name, total)
            .join(SessionEntity, SessionEntity.entity_id == Entity.id)
            .filter(SessionEntity.session_id.in_(session_ids))
        )
        if type:
            query = query.filter(Entity.type == type)
        rows = query.group_by(Entity.name).order_by(total.desc(), Entity.name).limit(limit).all()
        return [(name, int(freq)) for name, freq in rows]
