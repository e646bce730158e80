"""
Parse phase of a sync: read one session file fully into memory.

Nothing here touches the database. The write transaction is opened only
after :func:`extract_session` returns, so slow parsing of a large file never
holds a write lock.
"""

import logging
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Optional

from memex.models.parsed import (
    AssistantEvent,
    ExtractedMessage,
    ExtractedSession,
    SkippedEvent,
    SummaryEvent,
    SystemEvent,
    UnclassifiedEvent,
    UserEvent,
)
from memex.parsers.classifier import classify
from memex.parsers.reader import iter_records
from memex.parsers.types import ReadIssue, ReadStats
from memex.sources import SessionFile

logger = logging.getLogger(__name__)

# Number of malformed line numbers quoted in the warning for one file
MAX_REPORTED_ISSUES = 5


def project_name_from_path(project_path: str) -> str:
    """Display name for a project: the last path component."""
    name = PurePath(project_path.rstrip("/\\")).name
    return name or project_path


def extract_session(source: SessionFile) -> ExtractedSession:
    """
    Stream a session file through the classifier and fold the events.

    Message ids come from the record ``uuid``; records without one get a
    deterministic ``<session>:<line>`` id so re-extraction stays idempotent.

    Args:
        source: Session file to read

    Returns:
        ExtractedSession with messages, tool activity and counters

    Raises:
        SourceInaccessibleError: If the file cannot be read
    """
    fallback_time = datetime.fromtimestamp(source.mtime_ns / 1e9, tz=timezone.utc)
    stats = ReadStats()

    extracted = ExtractedSession(
        session_id=source.id,
        source_path=str(source.path),
        project_path_encoded=source.encoded_project,
        project_path_decoded=source.encoded_project,
        project_name=source.encoded_project,
    )

    project_path: Optional[str] = None
    last_time: Optional[datetime] = None

    for item in iter_records(source.path, stats=stats):
        if isinstance(item, ReadIssue):
            continue

        event = classify(item)
        context = event.context

        if project_path is None and context.cwd:
            project_path = context.cwd
        if extracted.format_version is None and context.version:
            extracted.format_version = context.version

        timestamp = context.timestamp or last_time or fallback_time
        if context.timestamp is not None:
            last_time = context.timestamp

        message_id = context.uuid or f"{source.id}:{context.line_number}"

        if isinstance(event, UserEvent):
            extracted.tool_results.extend(event.tool_results)
            if event.text.strip():
                extracted.messages.append(
                    ExtractedMessage(
                        id=message_id,
                        role="user",
                        content=event.text,
                        timestamp=timestamp,
                        parent_id=context.parent_uuid,
                    )
                )
        elif isinstance(event, AssistantEvent):
            extracted.tool_invocations.extend(event.tool_invocations)
            if event.text.strip() or event.tool_invocations:
                extracted.messages.append(
                    ExtractedMessage(
                        id=message_id,
                        role="assistant",
                        content=event.text,
                        timestamp=timestamp,
                        parent_id=context.parent_uuid,
                        tool_use_ids=[tool.id for tool in event.tool_invocations],
                    )
                )
        elif isinstance(event, SummaryEvent):
            extracted.summary = event.summary
            if event.leaf_uuid:
                extracted.summary_leaf_uuids.append(event.leaf_uuid)
        elif isinstance(event, SystemEvent):
            extracted.system_records += 1
        elif isinstance(event, SkippedEvent):
            extracted.skipped_records += 1
        elif isinstance(event, UnclassifiedEvent):
            extracted.unclassified_records += 1
            logger.debug(
                f"Unclassified record at {source.path}:{context.line_number} ({event.reason})"
            )

    extracted.lines_read = stats.lines
    extracted.malformed_lines = stats.malformed
    extracted.read_issues = stats.issues

    if project_path:
        extracted.project_path_decoded = project_path
    extracted.project_name = project_name_from_path(extracted.project_path_decoded)

    if extracted.messages:
        times = [message.timestamp for message in extracted.messages]
        extracted.start_time = min(times)
        extracted.end_time = max(times)
    else:
        extracted.start_time = fallback_time

    if stats.issues:
        lines = ", ".join(str(issue.line_number) for issue in stats.issues[:MAX_REPORTED_ISSUES])
        logger.warning(
            f"Skipped {stats.malformed} malformed line(s) in {source.path} (lines {lines})"
        )
    if extracted.unclassified_records:
        logger.info(
            f"{extracted.unclassified_records} unclassified record(s) in {source.path}"
        )

    return extracted
