"""
Shared types for the streaming reader.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

# Malformed line content is truncated to this many characters in reports
ISSUE_CONTEXT_LENGTH = 100


@dataclass
class RawRecord:
    """One decoded JSON object and the 1-based line it came from."""

    line_number: int
    data: dict[str, Any]


@dataclass
class ReadIssue:
    """
    A line that could not be decoded.

    Reported and skipped; never aborts the file.
    """

    line_number: int
    message: str
    content: Optional[str] = None

    def __post_init__(self) -> None:
        if self.content and len(self.content) > ISSUE_CONTEXT_LENGTH:
            self.content = self.content[:ISSUE_CONTEXT_LENGTH] + "..."

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "line_number": self.line_number,
            "message": self.message,
        }
        if self.content:
            result["content"] = self.content
        return result


ReadItem = Union[RawRecord, ReadIssue]


@dataclass
class ReadStats:
    """Counters accumulated while streaming a file."""

    lines: int = 0
    blank_lines: int = 0
    records: int = 0
    issues: list[ReadIssue] = field(default_factory=list)

    @property
    def malformed(self) -> int:
        return len(self.issues)

    def observe(self, item: ReadItem) -> None:
        if isinstance(item, RawRecord):
            self.records += 1
        else:
            self.issues.append(item)
