"""
Base repository with generic CRUD operations.
"""

from typing import Any, Collection, Generic, Iterable, List, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from memex.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Generic repository over one mapped model."""

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: Any) -> Optional[ModelType]:
        """
        Get an instance by primary key.

        Args:
            id: Primary key value

        Returns:
            Instance or None if not found
        """
        return self.session.get(self.model, id)

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ModelType]:
        """
        Get all instances with optional pagination.

        Args:
            limit: Maximum number of results
            offset: Number of results to skip

        Returns:
            List of instances
        """
        query = self.session.query(self.model).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def create(self, **kwargs: Any) -> ModelType:
        """
        Create and flush a new instance.

        Args:
            **kwargs: Column values

        Returns:
            The persisted instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        self.session.refresh(instance)
        return instance

    def update(self, id: Any, **kwargs: Any) -> Optional[ModelType]:
        """
        Update an instance's attributes.

        Returns:
            Updated instance or None if not found
        """
        instance = self.get(id)
        if instance is None:
            return None
        for key, value in kwargs.items():
            setattr(instance, key, value)
        self.session.flush()
        return instance

    def delete(self, id: Any) -> bool:
        """
        Delete an instance by primary key.

        Returns:
            True if deleted, False if not found
        """
        instance = self.get(id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.flush()
        return True

    def count(self) -> int:
        """Count all instances."""
        return self.session.query(self.model).count()

    def dump(self) -> List[dict[str, Any]]:
        """
        Read every row as a plain mapping of column name to value.

        Returns:
            Rows in primary key order
        """
        table = self.model.__table__
        statement = select(table).order_by(*table.primary_key.columns)
        return [dict(row._mapping) for row in self.session.execute(statement)]

    def insert_rows(
        self, rows: Iterable[dict[str, Any]], exclude: Collection[str] = ()
    ) -> int:
        """
        Insert raw rows, skipping any that collide with a stored key.

        Unknown keys are ignored, so rows written by a newer version still load.

        Args:
            rows: Column name to value mappings
            exclude: Columns to leave to their defaults (e.g. surrogate keys)

        Returns:
            Number of rows actually inserted
        """
        table = self.model.__table__
        columns = set(table.c.keys()) - set(exclude)
        inserted = 0
        for row in rows:
            values = {key: value for key, value in row.items() if key in columns}
            statement = insert(table).values(**values).on_conflict_do_nothing()
            inserted += self.session.execute(statement).rowcount
        return inserted
