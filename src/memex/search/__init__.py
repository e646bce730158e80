"""Full-text search and ranking."""

from memex.search.engine import (
    SearchFilters,
    SearchResponse,
    SearchResult,
    SearchService,
    SessionMatch,
)
from memex.search.query import ParsedQuery, parse_query

__all__ = [
    "ParsedQuery",
    "SearchFilters",
    "SearchResponse",
    "SearchResult",
    "SearchService",
    "SessionMatch",
    "parse_query",
]
