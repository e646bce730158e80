"""
Search query compiler.

Turns user query text into an FTS5 MATCH expression. Every term is emitted
as a quoted FTS5 string, so characters with special meaning to FTS5
(``-``, ``:``, ``.``, parentheses) are matched literally instead of being
parsed as syntax.

Supported syntax:
- bare terms, combined with AND
- ``"quoted phrases"``
- ``OR`` / ``NOT`` / ``AND`` (uppercase) between terms; a leading ``NOT``
  or a ``NOT`` before a term too short to index is rejected, and an
  ``AND`` / ``OR`` whose operand was dropped is discarded with it
- ``term*`` prefix terms (the trigram index already matches substrings,
  so the star is accepted and dropped)
- ``project:NAME``, ``role:ROLE``, ``session:ID`` filter tokens, which are
  pulled out of the text and returned as filters
"""

import re
import string
from dataclasses import dataclass, field
from typing import Optional

from memex.exceptions import InvalidQueryError

OPERATORS = ("AND", "OR", "NOT")
FILTER_KEYS = ("project", "role", "session")

_TOKEN_PATTERN = re.compile(r'(\w+):"([^"]*)"|"([^"]*)"?|(\S+)')
_EDGE_PUNCTUATION = string.punctuation.replace("*", "")


@dataclass
class ParsedQuery:
    """A compiled query."""

    fts_query: str
    terms: list[str] = field(default_factory=list)
    filters: dict[str, str] = field(default_factory=dict)


def quote_term(term: str) -> str:
    """Quote a term as an FTS5 string literal."""
    return '"' + term.replace('"', '""') + '"'


def _clean_bare(token: str) -> str:
    token = token.strip(_EDGE_PUNCTUATION)
    token = token.rstrip("*")
    return token.strip(_EDGE_PUNCTUATION)


def parse_query(text: Optional[str], min_term_length: int = 3) -> ParsedQuery:
    """
    Compile query text into an FTS5 MATCH expression.

    Args:
        text: Raw user query
        min_term_length: Bare terms and phrases shorter than this are dropped

    Returns:
        ParsedQuery with the MATCH expression, the kept terms and any filters

    Raises:
        InvalidQueryError: If no searchable term remains or a NOT has no
            usable operand on both sides

    Example:
        >>> parse_query('auth OR "token refresh" project:api').fts_query
        '"auth" OR "token refresh"'
    """
    if text is None or not text.strip():
        raise InvalidQueryError("Search query must not be empty", context={"query": text or ""})

    filters: dict[str, str] = {}
    parts: list[tuple[str, str]] = []  # ("term" | "op" | "dropped", value)

    for match in _TOKEN_PATTERN.finditer(text):
        quoted_key, quoted_value, phrase, bare = match.groups()

        if quoted_key is not None:
            if quoted_key.lower() in FILTER_KEYS:
                if quoted_value.strip():
                    filters[quoted_key.lower()] = quoted_value.strip()
                continue
            phrase = f"{quoted_key}:{quoted_value}"

        if phrase is not None:
            phrase = " ".join(phrase.split())
            if len(phrase) >= min_term_length:
                parts.append(("term", phrase))
            elif phrase:
                parts.append(("dropped", phrase))
            continue

        if bare in OPERATORS:
            parts.append(("op", bare))
            continue

        key, sep, value = bare.partition(":")
        if sep and key.lower() in FILTER_KEYS:
            if value:
                filters[key.lower()] = value
            continue

        term = _clean_bare(bare)
        if len(term) >= min_term_length:
            parts.append(("term", term))
        elif term:
            parts.append(("dropped", term))

    expression: list[str] = []
    terms: list[str] = []
    pending_operator: Optional[str] = None
    for kind, value in parts:
        if kind == "op":
            if expression:
                pending_operator = value
            elif value == "NOT":
                raise InvalidQueryError(
                    "NOT must follow a search term", context={"query": text}
                )
            continue
        if kind == "dropped":
            # An operator never carries over to the next kept term
            if pending_operator == "NOT":
                raise InvalidQueryError(
                    f"Cannot exclude {value!r}: terms shorter than "
                    f"{min_term_length} characters are not indexed",
                    context={"query": text},
                )
            pending_operator = None
            continue
        if expression:
            expression.append(pending_operator or "AND")
        expression.append(quote_term(value))
        terms.append(value)
        pending_operator = None

    if not terms:
        raise InvalidQueryError(
            f"Search query has no terms of at least {min_term_length} characters",
            context={"query": text},
        )

    return ParsedQuery(fts_query=" ".join(expression), terms=terms, filters=filters)
