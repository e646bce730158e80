"""
Streaming JSONL reader for session logs.

Session files can exceed tens of megabytes, so records are decoded one line
at a time and yielded lazily. Calling :func:`iter_records` again on an
unchanged file yields the same sequence, which is what makes retrying a
failed extraction safe.
"""

import json
import logging
from pathlib import Path
from typing import Iterator, Optional

from memex.exceptions import SourceInaccessibleError
from memex.parsers.types import RawRecord, ReadIssue, ReadItem, ReadStats

logger = logging.getLogger(__name__)


def iter_records(file_path: Path, stats: Optional[ReadStats] = None) -> Iterator[ReadItem]:
    """
    Yield decoded records and per-line issues from a JSONL file.

    Blank lines are skipped silently. Lines that fail to decode, or decode
    to something other than a JSON object, are yielded as :class:`ReadIssue`
    so the caller can count them.

    Args:
        file_path: Path to the .jsonl file
        stats: Optional counters updated as items are yielded

    Yields:
        RawRecord or ReadIssue, in line order

    Raises:
        SourceInaccessibleError: If the file cannot be opened or read
    """
    try:
        handle = file_path.open("r", encoding="utf-8", errors="replace")
    except OSError as e:
        raise SourceInaccessibleError(
            f"Cannot open session file: {e.strerror or e}",
            context={"path": str(file_path)},
        ) from e

    with handle:
        line_number = 0
        try:
            for line_number, line in enumerate(handle, start=1):
                if stats is not None:
                    stats.lines += 1

                stripped = line.strip()
                if not stripped:
                    if stats is not None:
                        stats.blank_lines += 1
                    continue

                item = _decode_line(stripped, line_number)
                if isinstance(item, ReadIssue):
                    logger.debug(
                        f"Skipping malformed line {line_number} in {file_path}: {item.message}"
                    )
                if stats is not None:
                    stats.observe(item)
                yield item
        except OSError as e:
            raise SourceInaccessibleError(
                f"Error reading session file after line {line_number}: {e}",
                context={"path": str(file_path), "line_number": line_number},
            ) from e


def _decode_line(line: str, line_number: int) -> ReadItem:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        return ReadIssue(line_number=line_number, message=f"Invalid JSON: {e.msg}", content=line)
    except (ValueError, RecursionError) as e:
        # Nesting too deep for the decoder, or numbers too long to convert
        return ReadIssue(
            line_number=line_number,
            message=f"Undecodable JSON: {type(e).__name__}",
            content=line,
        )

    if not isinstance(data, dict):
        return ReadIssue(
            line_number=line_number,
            message=f"Expected JSON object, got {type(data).__name__}",
            content=line,
        )

    return RawRecord(line_number=line_number, data=data)


def read_first_value(file_path: Path, key: str, max_lines: int = 20) -> Optional[str]:
    """
    Return the first string value of ``key`` found in the first lines of a file.

    Used for cheap metadata lookups (e.g. ``cwd``) without a full parse.
    """
    try:
        for index, item in enumerate(iter_records(file_path)):
            if index >= max_lines:
                break
            if isinstance(item, RawRecord):
                value = item.data.get(key)
                if isinstance(value, str) and value:
                    return value
    except SourceInaccessibleError:
        return None
    return None
