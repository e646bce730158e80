"""
Event classifier for session log records.

The log format is undocumented and changes between host tool versions, so
classification is a dispatch on the record's ``type`` field with an explicit
unclassified variant. Nothing here raises on bad input: missing or
mistyped fields degrade the record to :class:`UnclassifiedEvent`.
"""

import logging
from typing import Any, Callable, Optional

from memex.models.parsed import (
    AssistantEvent,
    ClassifiedEvent,
    EventContext,
    SkippedEvent,
    SummaryEvent,
    SystemEvent,
    ToolInvocation,
    ToolResult,
    UnclassifiedEvent,
    UserEvent,
)
from memex.parsers.types import RawRecord
from memex.parsers.utils import (
    extract_text_content,
    normalize_timestamp,
    stringify_tool_result,
)

logger = logging.getLogger(__name__)

# Record types that carry progress, UI or bookkeeping data only
SKIP_TYPES = frozenset(
    {
        "progress",
        "agent_progress",
        "bash_progress",
        "mcp_progress",
        "hook_progress",
        "base64",
        "image",
        "file-history-snapshot",
        "waiting_for_task",
        "create",
        "update",
        "queue-operation",
    }
)


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def build_context(record: RawRecord) -> EventContext:
    """Pull the shared envelope fields out of a record."""
    data = record.data
    raw_timestamp = data.get("timestamp")
    return EventContext(
        line_number=record.line_number,
        uuid=_optional_str(data.get("uuid")),
        parent_uuid=_optional_str(data.get("parentUuid")),
        session_id=_optional_str(data.get("sessionId")),
        timestamp=normalize_timestamp(raw_timestamp) if raw_timestamp is not None else None,
        cwd=_optional_str(data.get("cwd")),
        version=_optional_str(data.get("version")),
        git_branch=_optional_str(data.get("gitBranch")),
        is_sidechain=bool(data.get("isSidechain", False)),
    )


def _message_content(data: dict[str, Any]) -> tuple[bool, Any]:
    message = data.get("message")
    if not isinstance(message, dict) or "content" not in message:
        return False, None
    return True, message["content"]


def _classify_user(record: RawRecord, context: EventContext) -> ClassifiedEvent:
    found, content = _message_content(record.data)
    if not found or not isinstance(content, (str, list)):
        return UnclassifiedEvent(context=context, raw=record.data, reason="user record without content")

    if isinstance(content, str):
        return UserEvent(context=context, text=content)

    tool_results = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        tool_use_id = _optional_str(block.get("tool_use_id"))
        if tool_use_id is None:
            continue
        tool_results.append(
            ToolResult(
                tool_use_id=tool_use_id,
                content=stringify_tool_result(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            )
        )

    return UserEvent(
        context=context,
        text=extract_text_content(content),
        tool_results=tool_results,
    )


def _classify_assistant(record: RawRecord, context: EventContext) -> ClassifiedEvent:
    found, content = _message_content(record.data)
    if not found or not isinstance(content, (str, list)):
        return UnclassifiedEvent(
            context=context, raw=record.data, reason="assistant record without content"
        )

    invocations = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            tool_id = _optional_str(block.get("id"))
            name = _optional_str(block.get("name"))
            if tool_id is None or name is None:
                continue
            tool_input = block.get("input")
            invocations.append(
                ToolInvocation(
                    id=tool_id,
                    name=name,
                    input=tool_input if isinstance(tool_input, dict) else {},
                    timestamp=context.timestamp,
                )
            )

    message = record.data.get("message") or {}
    return AssistantEvent(
        context=context,
        text=extract_text_content(content),
        tool_invocations=invocations,
        model=_optional_str(message.get("model")),
    )


def _classify_summary(record: RawRecord, context: EventContext) -> ClassifiedEvent:
    summary = _optional_str(record.data.get("summary"))
    if summary is None:
        return UnclassifiedEvent(context=context, raw=record.data, reason="summary without text")
    return SummaryEvent(
        context=context,
        summary=summary,
        leaf_uuid=_optional_str(record.data.get("leafUuid")),
    )


def _classify_system(record: RawRecord, context: EventContext) -> ClassifiedEvent:
    subtype = _optional_str(record.data.get("subtype"))
    if subtype is None:
        return UnclassifiedEvent(context=context, raw=record.data, reason="system without subtype")
    content = record.data.get("content")
    return SystemEvent(
        context=context,
        subtype=subtype,
        content=content if isinstance(content, str) else "",
    )


_DISPATCH: dict[str, Callable[[RawRecord, EventContext], ClassifiedEvent]] = {
    "user": _classify_user,
    "assistant": _classify_assistant,
    "summary": _classify_summary,
    "system": _classify_system,
}


def classify(record: RawRecord) -> ClassifiedEvent:
    """
    Classify one decoded record.

    Args:
        record: Decoded JSON object with its line number

    Returns:
        Exactly one event variant. Never raises on malformed input.
    """
    context = build_context(record)
    record_type = record.data.get("type")

    if not isinstance(record_type, str):
        return UnclassifiedEvent(context=context, raw=record.data, reason="missing type field")

    if record_type in SKIP_TYPES:
        return SkippedEvent(context=context, reason=record_type)

    handler = _DISPATCH.get(record_type)
    if handler is None:
        logger.debug(f"Unrecognized record type '{record_type}' at line {record.line_number}")
        return UnclassifiedEvent(
            context=context, raw=record.data, reason=f"unknown type '{record_type}'"
        )

    return handler(record, context)
