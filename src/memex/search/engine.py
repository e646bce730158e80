"""
Ranked full-text search over stored messages.

Queries always go through the FTS5 ``MATCH`` operator; there is no code
path that compares message content with ``=`` or ``LIKE``. Filters are
applied as SQL predicates on message and session metadata, never folded
into the MATCH expression.

bm25() returns unbounded scores where lower is better. Results are
normalized to [0, 1] with 1 the best match in the result set, ordered by
score then most recent first, and capped to an output budget measured in
serialized characters.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from memex.config import Settings, settings as default_settings
from memex.db.connection import Store
from memex.exceptions import InvalidArgumentError, InvalidQueryError, classify_db_error
from memex.models.db import ChatSession, MessageRole
from memex.parsers.utils import to_iso
from memex.search.query import ParsedQuery, parse_query

logger = logging.getLogger(__name__)

MARK_OPEN = "<mark>"
MARK_CLOSE = "</mark>"
ELLIPSIS = "..."

_ROLES = {role.value for role in MessageRole}


@dataclass
class SearchFilters:
    """Metadata predicates applied alongside the MATCH expression."""

    project: Optional[str] = None  # Case-insensitive substring of project name or path
    role: Optional[str] = None
    session_id: Optional[str] = None
    since: Optional[datetime] = None
    before: Optional[datetime] = None


@dataclass
class SearchResult:
    session_id: str
    message_id: str
    role: str
    score: float
    timestamp: str
    snippet: str
    project_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResponse:
    """
    Ranked results plus whether the output budget cut the list short.

    ``total_matches`` counts every message matching the query and filters,
    before the result limit and the output budget are applied.
    """

    query: str
    results: list[SearchResult] = field(default_factory=list)
    truncated: bool = False
    total_matches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "results": [result.to_dict() for result in self.results],
            "truncated": self.truncated,
            "total_matches": self.total_matches,
        }


@dataclass
class SessionMatch:
    """A session whose summary matched."""

    session_id: str
    project_name: Optional[str]
    score: float
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_scores(raw_scores: list[float]) -> list[float]:
    """
    Map bm25 ranks (lower is better) onto [0, 1] (higher is better).

    A single result, or a set of identical ranks, normalizes to 1.0.

    Example:
        >>> normalize_scores([-4.0, -2.0, -1.0])
        [1.0, 0.3333333333333333, 0.0]
    """
    if not raw_scores:
        return []
    best = min(raw_scores)
    worst = max(raw_scores)
    spread = worst - best
    if spread <= 0:
        return [1.0 for _ in raw_scores]
    return [(worst - score) / spread for score in raw_scores]


def apply_output_budget(
    results: list[SearchResult], budget: int
) -> tuple[list[SearchResult], bool]:
    """
    Keep whole results while their serialized size fits the budget.

    Returns:
        (kept results, True if any result was dropped)
    """
    kept: list[SearchResult] = []
    used = 0
    for result in results:
        size = len(json.dumps(result.to_dict(), ensure_ascii=False))
        if used + size > budget:
            return kept, True
        kept.append(result)
        used += size
    return kept, False


def _validate(filters: SearchFilters, limit: int) -> None:
    if limit < 1:
        raise InvalidArgumentError(f"Limit must be positive, got {limit}", context={"limit": limit})
    if filters.role is not None and filters.role not in _ROLES:
        raise InvalidQueryError(
            f"Unknown role filter: {filters.role}",
            context={"role": filters.role, "allowed": sorted(_ROLES)},
        )
    if filters.since and filters.before and filters.since >= filters.before:
        raise InvalidQueryError(
            "Time range is empty: 'since' must be earlier than 'before'",
            context={"since": to_iso(filters.since), "before": to_iso(filters.before)},
        )


class SearchService:
    """
    Search service over a :class:`Store`.

    Example:
        >>> response = SearchService(store).search("auth", SearchFilters(role="user"))
        >>> [r.message_id for r in response.results]
    """

    def __init__(self, store: Store, config: Optional[Settings] = None):
        self.store = store
        self.config = config or default_settings

    def compile(self, query: str, filters: Optional[SearchFilters] = None) -> tuple[ParsedQuery, SearchFilters]:
        """
        Parse query text and merge inline filter tokens with explicit filters.

        Explicit filters win over inline ones.
        """
        parsed = parse_query(query, min_term_length=self.config.min_term_length)
        merged = SearchFilters(**asdict(filters)) if filters else SearchFilters()
        merged.project = merged.project or parsed.filters.get("project")
        merged.role = merged.role or parsed.filters.get("role")
        merged.session_id = merged.session_id or parsed.filters.get("session")
        return parsed, merged

    def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> SearchResponse:
        """
        Run a ranked full-text search.

        Args:
            query: Query text (see :mod:`memex.search.query`)
            filters: Optional metadata filters
            limit: Maximum results before the output budget applies

        Returns:
            SearchResponse

        Raises:
            InvalidQueryError: Empty or malformed query, bad role or time range
        """
        limit = limit if limit is not None else self.config.search_default_limit
        parsed, merged = self.compile(query, filters)
        _validate(merged, limit)

        clauses = ["WHERE messages_fts MATCH :match"]
        params: dict[str, Any] = {"match": parsed.fts_query}
        if merged.project:
            clauses.append(
                "AND (lower(s.project_name) LIKE :project OR lower(s.project_path_decoded) LIKE :project)"
            )
            params["project"] = f"%{merged.project.lower()}%"
        if merged.role:
            clauses.append("AND m.role = :role")
            params["role"] = merged.role
        if merged.session_id:
            clauses.append("AND m.session_id = :session_id")
            params["session_id"] = merged.session_id
        if merged.since:
            clauses.append("AND m.timestamp >= :since")
            params["since"] = to_iso(merged.since)
        if merged.before:
            clauses.append("AND m.timestamp < :before")
            params["before"] = to_iso(merged.before)

        joins = (
            "FROM messages_fts "
            "JOIN messages_meta m ON m.seq = messages_fts.rowid "
            "JOIN sessions s ON s.id = m.session_id "
            + " ".join(clauses)
        )
        count_statement = text("SELECT count(*) " + joins)
        statement = text(
            "SELECT m.id AS message_id, m.session_id, m.role, m.timestamp, "
            "s.project_name, bm25(messages_fts) AS rank, "
            "snippet(messages_fts, 0, :mark_open, :mark_close, :ellipsis, :snippet_tokens) AS snippet "
            + joins
            + " ORDER BY rank, m.timestamp DESC LIMIT :limit"
        )
        select_params = {
            **params,
            "mark_open": MARK_OPEN,
            "mark_close": MARK_CLOSE,
            "ellipsis": ELLIPSIS,
            "snippet_tokens": self.config.snippet_tokens,
            "limit": limit,
        }

        with self.store.session() as db:
            try:
                rows = db.execute(statement, select_params).mappings().all()
                total = db.execute(count_statement, params).scalar() or 0
            except OperationalError as e:
                raise self._query_error(query, parsed, e) from e

        scores = normalize_scores([row["rank"] for row in rows])
        results = [
            SearchResult(
                session_id=row["session_id"],
                message_id=row["message_id"],
                role=row["role"],
                score=round(score, 6),
                timestamp=row["timestamp"],
                snippet=row["snippet"] or "",
                project_name=row["project_name"],
            )
            for row, score in zip(rows, scores)
        ]
        results.sort(key=lambda r: r.timestamp, reverse=True)
        results.sort(key=lambda r: r.score, reverse=True)

        kept, truncated = apply_output_budget(results, self.config.search_output_budget)
        if truncated:
            logger.info(
                f"Search output truncated to {len(kept)} of {len(results)} results "
                f"(budget {self.config.search_output_budget} chars)"
            )

        return SearchResponse(
            query=query, results=kept, truncated=truncated, total_matches=total
        )

    def search_sessions(self, query: str, limit: Optional[int] = None) -> list[SessionMatch]:
        """Search session summaries."""
        limit = limit if limit is not None else self.config.search_default_limit
        parsed = parse_query(query, min_term_length=self.config.min_term_length)
        _validate(SearchFilters(), limit)

        statement = text(
            "SELECT session_id, bm25(sessions_fts) AS rank, "
            "snippet(sessions_fts, 1, :mark_open, :mark_close, :ellipsis, :snippet_tokens) AS snippet "
            "FROM sessions_fts WHERE sessions_fts MATCH :match ORDER BY rank LIMIT :limit"
        )
        params = {
            "match": parsed.fts_query,
            "mark_open": MARK_OPEN,
            "mark_close": MARK_CLOSE,
            "ellipsis": ELLIPSIS,
            "snippet_tokens": self.config.snippet_tokens,
            "limit": limit,
        }

        with self.store.session() as db:
            try:
                rows = db.execute(statement, params).mappings().all()
            except OperationalError as e:
                raise self._query_error(query, parsed, e) from e

            ids = [row["session_id"] for row in rows]
            projects = dict(
                db.query(ChatSession.id, ChatSession.project_name)
                .filter(ChatSession.id.in_(ids))
                .all()
            ) if ids else {}

        scores = normalize_scores([row["rank"] for row in rows])
        return [
            SessionMatch(
                session_id=row["session_id"],
                project_name=projects.get(row["session_id"]),
                score=round(score, 6),
                snippet=row["snippet"] or "",
            )
            for row, score in zip(rows, scores)
        ]

    @staticmethod
    def _query_error(query: str, parsed: ParsedQuery, error: OperationalError) -> Exception:
        message = str(error.orig)
        if "fts5" in message.lower() or "syntax" in message.lower():
            return InvalidQueryError(
                f"Malformed search query: {message}",
                context={"query": query, "compiled": parsed.fts_query},
            )
        return classify_db_error(error, context={"query": query})
