"""
ToolUse repository.
"""

from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import ChatSession, ToolStatus, ToolUse
from memex.models.parsed import ToolInvocation, ToolResult
from memex.parsers.utils import to_iso

# Stored tool results are truncated to this many characters
MAX_RESULT_LENGTH = 10_000


class ToolUseRepository(BaseRepository[ToolUse]):
    """Repository for ToolUse model."""

    def __init__(self, session: Session):
        super().__init__(ToolUse, session)

    def insert_many(
        self,
        session_id: str,
        invocations: Iterable[ToolInvocation],
        default_timestamp: str,
    ) -> int:
        """
        Insert tool invocations as pending, skipping ids already stored.

        Returns:
            Number of rows actually inserted
        """
        inserted = 0
        for invocation in invocations:
            statement = (
                insert(ToolUse)
                .values(
                    id=invocation.id,
                    session_id=session_id,
                    name=invocation.name,
                    input=invocation.input,
                    timestamp=(
                        to_iso(invocation.timestamp)
                        if invocation.timestamp
                        else default_timestamp
                    ),
                    status=ToolStatus.PENDING.value,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            if self.session.execute(statement).rowcount > 0:
                inserted += 1
        return inserted

    def apply_results(self, results: Iterable[ToolResult]) -> int:
        """
        Record tool results against their invocations.

        Results whose invocation is unknown are ignored.

        Returns:
            Number of invocations updated
        """
        updated = 0
        for result in results:
            tool_use = self.get(result.tool_use_id)
            if tool_use is None:
                continue
            tool_use.status = (
                ToolStatus.ERROR.value if result.is_error else ToolStatus.SUCCESS.value
            )
            tool_use.result = result.content[:MAX_RESULT_LENGTH]
            updated += 1
        self.session.flush()
        return updated

    def get_by_session(self, session_id: str) -> List[ToolUse]:
        return (
            self.session.query(ToolUse)
            .filter(ToolUse.session_id == session_id)
            .order_by(ToolUse.timestamp)
            .all()
        )

    def top_tools(
        self, project: Optional[str] = None, limit: int = 10
    ) -> List[tuple[str, int]]:
        """
        Most frequently used tools.

        Args:
            project: Optional case-insensitive project name substring
            limit: Maximum number of tools

        Returns:
            List of (tool name, use count)
        """
        query = self.session.query(ToolUse.name, func.count(ToolUse.id).label("uses"))
        if project:
            query = query.join(ChatSession, ChatSession.id == ToolUse.session_id).filter(
                func.lower(ChatSession.project_name).like(f"%{project.lower()}%")
            )
        rows = (
            query.group_by(ToolUse.name)
            .order_by(func.count(ToolUse.id).desc(), ToolUse.name)
            .limit(limit)
            .all()
        )
        return [(name, uses) for name, uses in rows]
