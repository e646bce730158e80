"""
Session listing and display.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from memex.db.connection import Store
from memex.db.repositories import MessageRepository, SessionRepository, ToolUseRepository
from memex.exceptions import ErrorCode, NotFoundError
from memex.parsers.utils import build_thread


@dataclass
class ThreadedMessage:
    id: str
    role: str
    content: str
    timestamp: str
    depth: int
    tool_use_ids: list[str] = field(default_factory=list)


@dataclass
class SessionDetail:
    id: str
    project_name: str
    project_path: str
    start_time: str
    end_time: Optional[str]
    message_count: int
    summary: Optional[str]
    messages: list[ThreadedMessage] = field(default_factory=list)
    tools: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_name": self.project_name,
            "project_path": self.project_path,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "message_count": self.message_count,
            "summary": self.summary,
            "tools": self.tools,
            "messages": [message.__dict__ for message in self.messages],
        }


@dataclass
class SessionSummary:
    id: str
    project_name: str
    start_time: str
    message_count: int
    summary: Optional[str] = None


class SessionService:
    """Read access to stored sessions."""

    def __init__(self, store: Store):
        self.store = store

    def list_sessions(self, project: Optional[str] = None, limit: int = 20) -> list[SessionSummary]:
        """Most recent sessions, optionally filtered by project substring."""
        with self.store.session() as db:
            return [
                SessionSummary(
                    id=session.id,
                    project_name=session.project_name,
                    start_time=session.start_time,
                    message_count=session.message_count,
                    summary=session.summary,
                )
                for session in SessionRepository(db).get_recent(limit=limit, project=project)
            ]

    def show_session(self, session_id: str, threaded: bool = True) -> SessionDetail:
        """
        Load a session with its messages.

        With ``threaded`` the messages are ordered depth-first along their
        parent references; cycles in malformed logs are broken.

        Raises:
            NotFoundError: If the session is not stored
        """
        with self.store.session() as db:
            session = SessionRepository(db).get(session_id)
            if session is None:
                raise NotFoundError(
                    f"Session not found: {session_id}",
                    code=ErrorCode.SESSION_NOT_FOUND,
                    context={"session_id": session_id},
                )

            messages = MessageRepository(db).get_by_session(session_id)
            if threaded:
                ordered = build_thread(messages, key=lambda m: m.id, parent_key=lambda m: m.parent_id)
            else:
                ordered = [(message, 0) for message in messages]

            tools: dict[str, int] = {}
            for tool_use in ToolUseRepository(db).get_by_session(session_id):
                tools[tool_use.name] = tools.get(tool_use.name, 0) + 1

            return SessionDetail(
                id=session.id,
                project_name=session.project_name,
                project_path=session.project_path_decoded,
                start_time=session.start_time,
                end_time=session.end_time,
                message_count=session.message_count,
                summary=session.summary,
                tools=tools,
                messages=[
                    ThreadedMessage(
                        id=message.id,
                        role=message.role,
                        content=message.content,
                        timestamp=message.timestamp,
                        depth=depth,
                        tool_use_ids=list(message.tool_use_ids or []),
                    )
                    for message, depth in ordered
                ],
            )
