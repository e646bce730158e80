"""
Store statistics.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sqlalchemy import func

from memex.db.connection import Store
from memex.db.repositories import ExtractionStateRepository
from memex.models.db import ChatSession, Message, ToolUse


@dataclass
class ProjectStats:
    project_name: str
    session_count: int
    message_count: int


@dataclass
class Stats:
    session_count: int = 0
    message_count: int = 0
    tool_use_count: int = 0
    storage_size_bytes: int = 0
    per_project: list[ProjectStats] = field(default_factory=list)
    extraction_status: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StatsService:
    """Aggregate counts over a :class:`Store`."""

    def __init__(self, store: Store):
        self.store = store

    def stats(self, project_limit: Optional[int] = None) -> Stats:
        """
        Collect session, message and tool counts plus a per-project breakdown.

        Args:
            project_limit: Maximum projects in the breakdown (largest first)
        """
        with self.store.session() as db:
            session_count = db.query(func.count(ChatSession.id)).scalar() or 0
            message_count = db.query(func.count(Message.seq)).scalar() or 0
            tool_use_count = db.query(func.count(ToolUse.id)).scalar() or 0

            messages = func.coalesce(func.sum(ChatSession.message_count), 0)
            query = (
                db.query(
                    ChatSession.project_name,
                    func.count(ChatSession.id),
                    messages,
                )
                .group_by(ChatSession.project_name)
                .order_by(messages.desc(), ChatSession.project_name)
            )
            if project_limit is not None:
                query = query.limit(project_limit)
            per_project = [
                ProjectStats(project_name=name, session_count=sessions, message_count=int(total))
                for name, sessions, total in query.all()
            ]

            extraction_status = ExtractionStateRepository(db).count_by_status()

        return Stats(
            session_count=session_count,
            message_count=message_count,
            tool_use_count=tool_use_count,
            storage_size_bytes=self.store.size_bytes(),
            per_project=per_project,
            extraction_status=extraction_status,
        )
