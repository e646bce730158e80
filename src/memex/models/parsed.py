"""
Data models for classified log events.

These are intermediate representations produced by the classifier before
storage. Every decoded log record maps onto exactly one of the event
variants below; the sync pipeline folds them into an
:class:`ExtractedSession`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from memex.parsers.types import ReadIssue


@dataclass
class ToolInvocation:
    """A tool_use block inside an assistant turn."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class ToolResult:
    """A tool_result block returned inside a user turn."""

    tool_use_id: str
    content: str = ""
    is_error: bool = False


@dataclass
class EventContext:
    """Fields shared by most record types."""

    line_number: int
    uuid: Optional[str] = None
    parent_uuid: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    cwd: Optional[str] = None  # Working directory, used as project path
    version: Optional[str] = None  # Host tool version (format marker)
    git_branch: Optional[str] = None
    is_sidechain: bool = False


@dataclass
class UserEvent:
    context: EventContext
    text: str = ""
    tool_results: list[ToolResult] = field(default_factory=list)
    kind: str = field(default="user", init=False)


@dataclass
class AssistantEvent:
    context: EventContext
    text: str = ""
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    model: Optional[str] = None
    kind: str = field(default="assistant", init=False)


@dataclass
class SummaryEvent:
    context: EventContext
    summary: str
    leaf_uuid: Optional[str] = None  # Last message the summary covers
    kind: str = field(default="summary", init=False)


@dataclass
class SystemEvent:
    context: EventContext
    subtype: str
    content: str = ""
    kind: str = field(default="system", init=False)


@dataclass
class SkippedEvent:
    """A known record type carrying nothing worth storing."""

    context: EventContext
    reason: str
    kind: str = field(default="skipped", init=False)


@dataclass
class UnclassifiedEvent:
    """A record whose shape was not recognized. The raw payload is kept."""

    context: EventContext
    raw: dict[str, Any]
    reason: str = "unrecognized"
    kind: str = field(default="unclassified", init=False)


ClassifiedEvent = Union[
    UserEvent, AssistantEvent, SummaryEvent, SystemEvent, SkippedEvent, UnclassifiedEvent
]


@dataclass
class ExtractedMessage:
    """A message ready to be stored."""

    id: str
    role: str  # user | assistant
    content: str
    timestamp: datetime
    parent_id: Optional[str] = None
    tool_use_ids: list[str] = field(default_factory=list)


@dataclass
class ExtractedSession:
    """
    Everything extracted from one source file, built in memory before the
    write transaction is opened.
    """

    session_id: str
    source_path: str
    project_path_encoded: str
    project_path_decoded: str
    project_name: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    format_version: Optional[str] = None
    summary: Optional[str] = None
    summary_leaf_uuids: list[str] = field(default_factory=list)
    messages: list[ExtractedMessage] = field(default_factory=list)
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    read_issues: list[ReadIssue] = field(default_factory=list)

    # Counters
    lines_read: int = 0
    malformed_lines: int = 0
    skipped_records: int = 0
    unclassified_records: int = 0
    system_records: int = 0
