"""
Tests for LinkRepository, TopicRepository and EntityRepository.
"""

import pytest

from memex.db.repositories import (
    EntityRepository,
    LinkRepository,
    SessionRepository,
    TopicRepository,
)
from memex.exceptions import InvalidArgumentError
from memex.models.db import Link


@pytest.fixture
def db(store):
    with store.session() as session:
        yield session


def _add_session(db, session_id, project="webapp"):
    SessionRepository(db).upsert(
        session_id,
        project_path_encoded=f"-home-dev-{project}",
        project_path_decoded=f"/home/dev/{project}",
        project_name=project,
        start_time="2025-01-01T10:00:00.000Z",
    )


class TestLinkRepository:
    """Tests for link upserts and traversal."""

    def test_upsert_replaces_weight(self, db):
        repo = LinkRepository(db)

        repo.upsert("session", "a", "session", "b", "related_to", 0.3)
        repo.upsert("session", "a", "session", "b", "related_to", 0.7)

        links = db.query(Link).all()
        assert len(links) == 1
        assert links[0].weight == pytest.approx(0.7)

    def test_recomputed_weight_may_decrease(self, db):
        """Test re-adding a link stores the recomputed weight, even a lower one."""
        repo = LinkRepository(db)

        repo.upsert("session", "a", "session", "b", "related_to", 1.0)
        repo.upsert("session", "a", "session", "b", "related_to", 0.25)

        assert repo.find_by_source("session", "a")[0].weight == pytest.approx(0.25)

    def test_distinct_relationships_kept(self, db):
        repo = LinkRepository(db)

        repo.upsert("session", "a", "session", "b", "related_to", 0.3)
        repo.upsert("session", "a", "session", "b", "continues", 1.0)

        assert len(repo.find_by_source("session", "a")) == 2
        assert len(repo.find_by_target("session", "b", relationship="continues")) == 1

    @pytest.mark.parametrize("weight", [-0.1, 1.5])
    def test_weight_out_of_range_rejected(self, db, weight):
        with pytest.raises(InvalidArgumentError):
            LinkRepository(db).upsert("session", "a", "session", "b", "related_to", weight)

    def test_unknown_types_rejected(self, db):
        repo = LinkRepository(db)

        with pytest.raises(InvalidArgumentError):
            repo.upsert("planet", "a", "session", "b", "related_to")
        with pytest.raises(InvalidArgumentError):
            repo.upsert("session", "a", "session", "b", "orbits")

    def test_neighbors_follow_both_directions(self, db):
        repo = LinkRepository(db)
        repo.upsert("session", "a", "topic", "1", "mentions", 0.5)
        repo.upsert("session", "b", "session", "a", "continues", 1.0)

        neighbors = {(n.type, n.id): n.weight for n in repo.neighbors("session", "a")}

        assert neighbors == {("topic", "1"): 0.5, ("session", "b"): 1.0}

    def test_is_empty_and_delete(self, db):
        repo = LinkRepository(db)
        assert repo.is_empty()

        repo.upsert("session", "a", "topic", "1", "mentions", 0.5)
        assert not repo.is_empty()

        assert repo.delete_from_source("session", "a") == 1
        assert repo.is_empty()


class TestTopicRepository:
    def test_get_or_create_is_idempotent(self, db):
        repo = TopicRepository(db)

        first = repo.get_or_create("project:webapp")
        second = repo.get_or_create("project:webapp")

        assert first.id == second.id

    def test_for_sessions_counts_linking_sessions(self, db):
        topic = TopicRepository(db).get_or_create("project:webapp")
        links = LinkRepository(db)
        links.upsert("session", "a", "topic", str(topic.id), "mentions", 0.5)
        links.upsert("session", "b", "topic", str(topic.id), "mentions", 0.5)

        assert TopicRepository(db).for_sessions(["a", "b"]) == [("project:webapp", 2)]


class TestEntityRepository:
    """Tests for entities and session associations."""

    def test_upsert_keeps_highest_confidence(self, db):
        repo = EntityRepository(db)

        first = repo.upsert("concept", "Caching", confidence=0.4)
        second = repo.upsert("concept", "caching", confidence=0.9)
        repo.upsert("concept", "CACHING", confidence=0.2)

        assert first.id == second.id
        assert repo.find("concept", "caching").confidence == pytest.approx(0.9)

    def test_sessions_sharing(self, db):
        for session_id in ("a", "b", "c"):
            _add_session(db, session_id)
        repo = EntityRepository(db)
        app = repo.upsert("file", "/src/app.py")
        cfg = repo.upsert("file", "/src/config.py")
        repo.link_session("a", app.id, 3)
        repo.link_session("a", cfg.id, 1)
        repo.link_session("b", app.id, 1)
        repo.link_session("b", cfg.id, 2)
        repo.link_session("c", cfg.id, 1)

        assert repo.sessions_sharing("a", type="file") == [("b", 2), ("c", 1)]
        assert repo.count_for_session("a", type="file") == 2
        assert repo.top_for_sessions(["a", "b", "c"], type="file") == [
            ("/src/app.py", 4),
            ("/src/config.py", 4),
        ]

    def test_link_session_replaces_frequency(self, db):
        _add_session(db, "a")
        repo = EntityRepository(db)
        entity = repo.upsert("file", "/src/app.py")

        repo.link_session("a", entity.id, 1)
        repo.link_session("a", entity.id, 5)

        assert [(e.name, f) for e, f in repo.for_session("a")] == [("/src/app.py", 5)]

    def test_clear_session(self, db):
        _add_session(db, "a")
        repo = EntityRepository(db)
        entity = repo.upsert("file", "/src/app.py")
        repo.link_session("a", entity.id)

        assert repo.clear_session("a") == 1
        assert repo.for_session("a") == []
