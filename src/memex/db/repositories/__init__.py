"""
Repository pattern implementations for data access.
"""

from memex.db.repositories.base import BaseRepository
from memex.db.repositories.entity import EntityRepository
from memex.db.repositories.extraction_state import ExtractionStateRepository
from memex.db.repositories.link import LinkRepository, Neighbor
from memex.db.repositories.message import MessageRepository
from memex.db.repositories.session import SessionRepository
from memex.db.repositories.tool_use import ToolUseRepository
from memex.db.repositories.topic import TopicRepository

__all__ = [
    "BaseRepository",
    "EntityRepository",
    "ExtractionStateRepository",
    "LinkRepository",
    "MessageRepository",
    "Neighbor",
    "SessionRepository",
    "ToolUseRepository",
    "TopicRepository",
]
