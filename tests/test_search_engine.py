"""
Tests for ranked full-text search.
"""

import json
from datetime import datetime, timezone

import pytest

from memex.config import settings
from memex.db.repositories import MessageRepository, SessionRepository
from memex.exceptions import InvalidArgumentError, InvalidQueryError
from memex.pipeline.sync import SyncService
from memex.search import SearchFilters, SearchService
from memex.search.engine import SearchResult, apply_output_budget, normalize_scores


@pytest.fixture
def corpus(store, session_log):
    session_log.write(
        "s1",
        [
            session_log.user("u1", "set up auth for the dashboard", "2025-01-01T10:00:00.000Z"),
            session_log.assistant(
                "a1", "Adding OAuth login with auth middleware and auth tests",
                "2025-01-01T10:00:05.000Z", parent="u1",
            ),
            session_log.summary("Dashboard authentication"),
        ],
    )
    session_log.write(
        "s2",
        [
            session_log.user(
                "u2", "the billing report is wrong", "2025-02-01T09:00:00.000Z", cwd="/home/dev/api"
            ),
            session_log.assistant(
                "a2", "Fixed rounding in billing", "2025-02-01T09:01:00.000Z", cwd="/home/dev/api"
            ),
        ],
        project="-home-dev-api",
    )
    SyncService(store).sync()
    return store


class TestHelpers:
    def test_normalize_scores(self):
        assert normalize_scores([-4.0, -2.0, -1.0]) == [1.0, pytest.approx(1 / 3), 0.0]

    def test_normalize_identical_scores(self):
        assert normalize_scores([-2.0, -2.0]) == [1.0, 1.0]

    def test_normalize_empty(self):
        assert normalize_scores([]) == []

    def test_output_budget(self):
        results = [
            SearchResult("s", f"m{i}", "user", 1.0, "2025-01-01T00:00:00.000Z", "x" * 100)
            for i in range(5)
        ]
        size = len(json.dumps(results[0].to_dict()))

        kept, truncated = apply_output_budget(results, budget=size * 2)

        assert truncated
        assert len(kept) == 2

    def test_output_budget_not_hit(self):
        results = [SearchResult("s", "m1", "user", 1.0, "t", "snippet")]

        assert apply_output_budget(results, budget=50_000) == (results, False)


class TestSearch:
    """Tests for SearchService.search."""

    def test_substring_matches(self, corpus):
        """A term matches inside longer words."""
        response = SearchService(corpus).search("auth")

        assert {r.message_id for r in response.results} == {"u1", "a1"}
        assert response.truncated is False
        assert response.total_matches == 2

    def test_scores_normalized_and_ordered(self, corpus):
        response = SearchService(corpus).search("auth")
        scores = [r.score for r in response.results]

        assert all(0.0 <= score <= 1.0 for score in scores)
        assert scores[0] == 1.0
        assert scores == sorted(scores, reverse=True)

    def test_more_occurrences_rank_higher(self, corpus):
        response = SearchService(corpus).search("auth")

        assert response.results[0].message_id == "a1"

    def test_snippet_highlights_match(self, corpus):
        response = SearchService(corpus).search("billing")

        assert all("<mark>" in r.snippet for r in response.results)

    def test_result_fields(self, corpus):
        result = SearchService(corpus).search("rounding").results[0]

        assert result.session_id == "s2"
        assert result.role == "assistant"
        assert result.project_name == "api"
        assert result.timestamp == "2025-02-01T09:01:00.000Z"

    def test_no_matches(self, corpus):
        response = SearchService(corpus).search("kubernetes")

        assert response.results == []
        assert response.truncated is False

    def test_boolean_query(self, corpus):
        response = SearchService(corpus).search("billing NOT rounding")

        assert [r.message_id for r in response.results] == ["u2"]

    def test_limit(self, corpus):
        assert len(SearchService(corpus).search("auth", limit=1).results) == 1

    def test_total_counts_matches_beyond_limit(self, corpus):
        response = SearchService(corpus).search("auth", limit=1)

        assert len(response.results) == 1
        assert response.total_matches == 2

    def test_not_excludes_matches(self, corpus):
        response = SearchService(corpus).search("auth NOT dashboard")

        assert [r.message_id for r in response.results] == ["a1"]

    def test_leading_not_rejected(self, corpus):
        with pytest.raises(InvalidQueryError):
            SearchService(corpus).search("NOT auth")


class TestFilters:
    """Metadata filters are applied outside the MATCH expression."""

    def test_role_filter(self, corpus):
        response = SearchService(corpus).search("auth", SearchFilters(role="user"))

        assert [r.message_id for r in response.results] == ["u1"]

    def test_project_filter(self, corpus):
        response = SearchService(corpus).search("the", SearchFilters(project="API"))

        assert {r.session_id for r in response.results} == {"s2"}

    def test_inline_filters(self, corpus):
        response = SearchService(corpus).search("auth role:assistant session:s1")

        assert [r.message_id for r in response.results] == ["a1"]

    def test_time_range(self, corpus):
        filters = SearchFilters(
            since=datetime(2025, 1, 15, tzinfo=timezone.utc),
            before=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )

        response = SearchService(corpus).search("the", filters)

        assert {r.session_id for r in response.results} == {"s2"}

    def test_unknown_role_rejected(self, corpus):
        with pytest.raises(InvalidQueryError):
            SearchService(corpus).search("auth", SearchFilters(role="robot"))

    def test_empty_time_range_rejected(self, corpus):
        moment = datetime(2025, 1, 1, tzinfo=timezone.utc)

        with pytest.raises(InvalidQueryError):
            SearchService(corpus).search("auth", SearchFilters(since=moment, before=moment))

    def test_invalid_limit(self, corpus):
        with pytest.raises(InvalidArgumentError):
            SearchService(corpus).search("auth", limit=0)

    def test_empty_query_rejected(self, corpus):
        with pytest.raises(InvalidQueryError):
            SearchService(corpus).search("  ")


class TestOrderingAndBudget:
    def test_equal_scores_most_recent_first(self, store):
        with store.session() as db:
            SessionRepository(db).upsert(
                "s1",
                project_path_encoded="-p",
                project_path_decoded="/p",
                project_name="p",
                start_time="2025-01-01T00:00:00.000Z",
            )
            repo = MessageRepository(db)
            repo.insert_ignore("s1", "old", "user", "deploy the service", "2025-01-01T00:00:00.000Z")
            repo.insert_ignore("s1", "new", "user", "deploy the service", "2025-06-01T00:00:00.000Z")
            repo.insert_ignore("s1", "mid", "user", "deploy the service", "2025-03-01T00:00:00.000Z")

        response = SearchService(store).search("deploy")

        assert [r.message_id for r in response.results] == ["new", "mid", "old"]
        assert {r.score for r in response.results} == {1.0}

    def test_shorter_message_ranks_higher_at_equal_occurrences(self, store):
        with store.session() as db:
            SessionRepository(db).upsert(
                "s1",
                project_path_encoded="-p",
                project_path_decoded="/p",
                project_name="p",
                start_time="2025-01-01T00:00:00.000Z",
            )
            repo = MessageRepository(db)
            repo.insert_ignore(
                "s1",
                "long",
                "user",
                "migrate the billing tables and rebuild every report for the quarter",
                "2025-01-01T00:00:00.000Z",
            )
            repo.insert_ignore("s1", "short", "user", "migrate now", "2025-01-01T00:00:00.000Z")

        response = SearchService(store).search("migrate")

        assert [(r.message_id, r.score) for r in response.results] == [
            ("short", 1.0),
            ("long", 0.0),
        ]

    def test_truncated_flag(self, corpus, monkeypatch):
        monkeypatch.setattr(settings, "search_output_budget", 300)

        response = SearchService(corpus).search("auth")

        assert response.truncated is True
        assert len(response.results) < response.total_matches


class TestIndexConsistency:
    """Search reflects inserts, updates and deletes immediately."""

    def test_update_and_delete(self, corpus):
        service = SearchService(corpus)
        with corpus.session() as db:
            MessageRepository(db).get_by_id("u2").content = "invoice totals are off"

        assert [r.message_id for r in service.search("invoice").results] == ["u2"]
        assert [r.message_id for r in service.search("billing").results] == ["a2"]

        with corpus.session() as db:
            db.delete(SessionRepository(db).get("s2"))

        assert service.search("invoice").results == []
        assert service.search("billing").results == []


class TestSearchSessions:
    def test_summary_match(self, corpus):
        matches = SearchService(corpus).search_sessions("authentication")

        assert [m.session_id for m in matches] == ["s1"]
        assert matches[0].project_name == "webapp"
        assert matches[0].score == 1.0
