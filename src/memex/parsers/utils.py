"""
Utility functions for parsing session logs.

This module provides timestamp normalization, content-block extraction and
thread reconstruction shared by the classifier and the sync pipeline.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, TypeVar

from dateutil import parser as date_parser

T = TypeVar("T")

# Epoch values above this are milliseconds rather than seconds
EPOCH_MILLIS_THRESHOLD = 1e12


def parse_iso_timestamp(timestamp_str: str) -> datetime:
    """
    Parse an ISO 8601 timestamp string to a datetime object.

    Args:
        timestamp_str: ISO 8601 formatted timestamp (e.g., "2025-10-16T19:12:28.024Z")

    Returns:
        Parsed datetime object (timezone-aware, UTC if no offset was given)

    Raises:
        ValueError: If the timestamp string is invalid
    """
    try:
        parsed = date_parser.isoparse(timestamp_str)
    except (ValueError, TypeError, OverflowError) as e:
        raise ValueError(f"Invalid timestamp format: {timestamp_str}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_timestamp(value: Any, now: Optional[Callable[[], datetime]] = None) -> datetime:
    """
    Normalize a log timestamp to an aware UTC datetime.

    Accepts ISO-8601 strings, epoch seconds and epoch milliseconds. Anything
    unparseable falls back to the current time rather than raising.

    Example:
        >>> normalize_timestamp(1700000000).year
        2023
        >>> normalize_timestamp(1700000000000).year
        2023
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            pass
    elif isinstance(value, str) and value.strip():
        try:
            return parse_iso_timestamp(value.strip()).astimezone(timezone.utc)
        except ValueError:
            pass

    return (now or (lambda: datetime.now(timezone.utc)))()


def to_iso(value: datetime) -> str:
    """
    Format a datetime as the fixed-width UTC string used in the store.

    Example:
        >>> to_iso(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        '2025-01-02T03:04:05.000Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def extract_text_content(content: Any) -> str:
    """
    Extract text content from a message's content field.

    Content can be:
    - A string (simple message)
    - An array of content items (structured message); only ``text`` items
      are kept, so ``thinking`` and tool blocks are dropped

    Args:
        content: The message content (string or array)

    Returns:
        Extracted text content, or empty string if none found
    """
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        text_parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                if isinstance(text, str) and text:
                    text_parts.append(text)
        return "\n".join(text_parts)

    return ""


def stringify_tool_result(content: Any) -> str:
    """
    Flatten a tool_result payload to text.

    Results arrive as a plain string, a list of text blocks, or arbitrary JSON.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text = extract_text_content(content)
        if text:
            return text
    return json.dumps(content, ensure_ascii=False, default=str)


def safe_get_nested(
    data: dict[str, Any], *keys: Any, default: Any = None
) -> Optional[Any]:
    """
    Safely get a nested dictionary value.

    Args:
        data: The dictionary to search
        *keys: Sequence of keys to traverse
        default: Default value if path doesn't exist

    Returns:
        The value at the nested path, or default if not found

    Example:
        >>> data = {"message": {"content": [{"type": "text"}]}}
        >>> safe_get_nested(data, "message", "content", 0, "type")
        'text'
        >>> safe_get_nested(data, "message", "missing", "key", default="N/A")
        'N/A'
    """
    current: Any = data
    for key in keys:
        if isinstance(current, dict):
            current = current.get(key, default)
        elif isinstance(current, list) and isinstance(key, int):
            try:
                current = current[key]
            except (IndexError, TypeError):
                return default
        else:
            return default

        if current is None:
            return default

    return current


def build_thread(
    items: Iterable[T],
    key: Callable[[T], str],
    parent_key: Callable[[T], Optional[str]],
) -> list[tuple[T, int]]:
    """
    Order items as a depth-first thread using weak parent references.

    Parent ids that do not resolve make an item a root. Malformed input can
    contain cycles, so traversal tracks visited ids and each item is emitted
    at most once. Items only reachable through a cycle are appended as roots.

    Args:
        items: Items in their original (chronological) order
        key: Returns an item's id
        parent_key: Returns an item's parent id, if any

    Returns:
        List of ``(item, depth)`` pairs
    """
    ordered = list(items)
    by_id = {key(item): item for item in ordered}
    children: dict[str, list[T]] = {}
    roots: list[T] = []

    for item in ordered:
        parent = parent_key(item)
        if parent and parent in by_id and parent != key(item):
            children.setdefault(parent, []).append(item)
        else:
            roots.append(item)

    result: list[tuple[T, int]] = []
    visited: set[str] = set()

    def walk(start: T) -> None:
        stack = [(start, 0)]
        while stack:
            node, depth = stack.pop()
            node_id = key(node)
            if node_id in visited:
                continue
            visited.add(node_id)
            result.append((node, depth))
            for child in reversed(children.get(node_id, [])):
                stack.append((child, depth + 1))

    for root in roots:
        walk(root)
    for item in ordered:
        if key(item) not in visited:
            walk(item)

    return result
