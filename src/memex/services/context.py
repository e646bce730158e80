"""
Project context aggregation.

Summarizes what happened in a project: how many sessions and messages,
which tools and files came up most, and the most recent sessions.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from memex.db.connection import Store
from memex.db.repositories import (
    EntityRepository,
    SessionRepository,
    ToolUseRepository,
    TopicRepository,
)
from memex.exceptions import NotFoundError
from memex.models.db import ExtractedEntityKind
from memex.parsers.utils import to_iso

# Sessions considered when no day window is given
MAX_CONTEXT_SESSIONS = 500


@dataclass
class RecentSession:
    session_id: str
    start_time: str
    message_count: int
    summary: Optional[str] = None


@dataclass
class ProjectContext:
    project: str
    session_count: int = 0
    message_count: int = 0
    top_tools: list[tuple[str, int]] = field(default_factory=list)
    top_files: list[tuple[str, int]] = field(default_factory=list)
    topics: list[tuple[str, int]] = field(default_factory=list)
    recent_sessions: list[RecentSession] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ContextService:
    """Project-level summaries over a :class:`Store`."""

    def __init__(self, store: Store):
        self.store = store

    def project_context(
        self, project: str, days: Optional[int] = None, limit: int = 10
    ) -> ProjectContext:
        """
        Aggregate activity for projects whose name contains ``project``.

        Args:
            project: Case-insensitive project name substring
            days: Only consider sessions started within this many days
            limit: Entries per top-N list

        Raises:
            NotFoundError: If no session matches the project
        """
        with self.store.session() as db:
            sessions = SessionRepository(db).get_by_project(project, limit=MAX_CONTEXT_SESSIONS)
            if days is not None:
                cutoff = to_iso(datetime.now(timezone.utc) - timedelta(days=days))
                sessions = [session for session in sessions if session.start_time >= cutoff]

            if not sessions:
                raise NotFoundError(
                    f"No sessions found for project: {project}",
                    context={"project": project, "days": days},
                )

            session_ids = [session.id for session in sessions]
            context = ProjectContext(
                project=project,
                session_count=len(sessions),
                message_count=sum(session.message_count for session in sessions),
                top_tools=ToolUseRepository(db).top_tools(project=project, limit=limit),
                top_files=EntityRepository(db).top_for_sessions(
                    session_ids, type=ExtractedEntityKind.FILE.value, limit=limit
                ),
                topics=TopicRepository(db).for_sessions(session_ids, limit=limit),
                recent_sessions=[
                    RecentSession(
                        session_id=session.id,
                        start_time=session.start_time,
                        message_count=session.message_count,
                        summary=session.summary,
                    )
                    for session in sessions[:limit]
                ],
            )

        return context
