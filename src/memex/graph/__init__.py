"""Relationship graph queries."""

from memex.graph.related import (
    RelatedResponse,
    RelatedService,
    RelatedSession,
    RelatedStatus,
    find_related_with_hops,
)

__all__ = [
    "RelatedResponse",
    "RelatedService",
    "RelatedSession",
    "RelatedStatus",
    "find_related_with_hops",
]
