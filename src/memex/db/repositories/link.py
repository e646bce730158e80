"""
Link repository.

Links are unique on (source, target, relationship). Re-adding an existing
link stores the newly computed weight, which may be lower than the old one,
instead of creating a duplicate row.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.exceptions import InvalidArgumentError
from memex.models.db import EntityType, Link, Relationship

_ENTITY_TYPES = {member.value for member in EntityType}
_RELATIONSHIPS = {member.value for member in Relationship}


@dataclass(frozen=True)
class Neighbor:
    """An entity adjacent to another through one link, in either direction."""

    type: str
    id: str
    weight: float
    relationship: str


class LinkRepository(BaseRepository[Link]):
    """Repository for Link model."""

    def __init__(self, session: Session):
        super().__init__(Link, session)

    def upsert(
        self,
        source_type: str,
        source_id: str,
        target_type: str,
        target_id: str,
        relationship: str,
        weight: float = 1.0,
    ) -> None:
        """
        Create a link, or recompute the weight of an existing one.

        Raises:
            InvalidArgumentError: For unknown endpoint types, relationships,
                or a weight outside [0, 1]
        """
        if source_type not in _ENTITY_TYPES or target_type not in _ENTITY_TYPES:
            raise InvalidArgumentError(
                f"Unknown link endpoint type: {source_type} -> {target_type}"
            )
        if relationship not in _RELATIONSHIPS:
            raise InvalidArgumentError(f"Unknown relationship: {relationship}")
        if not 0.0 <= weight <= 1.0:
            raise InvalidArgumentError(
                f"Link weight must be within [0, 1], got {weight}"
            )

        statement = insert(Link).values(
            source_type=source_type,
            source_id=source_id,
            target_type=target_type,
            target_id=target_id,
            relationship=relationship,
            weight=weight,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[
                "source_type",
                "source_id",
                "target_type",
                "target_id",
                "relationship",
            ],
            set_={"weight": statement.excluded.weight},
        )
        self.session.execute(statement)

    def find_by_source(
        self, source_type: str, source_id: str, relationship: Optional[str] = None
    ) -> List[Link]:
        query = self.session.query(Link).filter(
            Link.source_type == source_type, Link.source_id == source_id
        )
        if relationship:
            query = query.filter(Link.relationship == relationship)
        return query.order_by(Link.weight.desc()).all()

    def find_by_target(
        self, target_type: str, target_id: str, relationship: Optional[str] = None
    ) -> List[Link]:
        query = self.session.query(Link).filter(
            Link.target_type == target_type, Link.target_id == target_id
        )
        if relationship:
            query = query.filter(Link.relationship == relationship)
        return query.order_by(Link.weight.desc()).all()

    def neighbors(self, entity_type: str, entity_id: str) -> List[Neighbor]:
        """
        Entities one link away, following links in both directions.

        Returns:
            Neighbors; an entity reachable by several links appears once per link
        """
        links = (
            self.session.query(Link)
            .filter(
                or_(
                    (Link.source_type == entity_type) & (Link.source_id == entity_id),
                    (Link.target_type == entity_type) & (Link.target_id == entity_id),
                )
            )
            .all()
        )

        result = []
        for link in links:
            if link.source_type == entity_type and link.source_id == entity_id:
                other_type, other_id = link.target_type, link.target_id
            else:
                other_type, other_id = link.source_type, link.source_id
            if other_type == entity_type and other_id == entity_id:
                continue  # self-loop
            result.append(
                Neighbor(
                    type=other_type,
                    id=other_id,
                    weight=link.weight,
                    relationship=link.relationship,
                )
            )
        return result

    def delete_from_source(
        self, source_type: str, source_id: str, relationship: Optional[str] = None
    ) -> int:
        """Delete links leaving an entity. Returns rows deleted."""
        query = self.session.query(Link).filter(
            Link.source_type == source_type, Link.source_id == source_id
        )
        if relationship:
            query = query.filter(Link.relationship == relationship)
        return query.delete(synchronize_session=False)

    def is_empty(self) -> bool:
        return self.session.query(Link.id).first() is None
