"""Tests for the actor, session and fragment stores over both backends."""

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from domain.context.memory.fragment_store import ActorStore, FragmentStore, SessionStore
from domain.context.memory.sqlite_memory_store import SQLiteFragmentBackend
from domain.errors import ConfigurationError, NotFoundError, ValidationError
from domain.models.memory import (
    Actor,
    Fragment,
    FragmentFilter,
    FragmentPartition,
    MetadataCondition,
    MetadataOperator,
    Session,
)
from infrastructure.config.settings import Settings, build_stores

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _fragment(content, minutes=0, actor_id="user", session_id="s1", embedding=None, **metadata):
    return Fragment(
        actor_id=actor_id,
        session_id=session_id,
        content=content,
        embedding=embedding,
        metadata=metadata,
        created_at=_at(minutes),
    )


@pytest.fixture
def setup(backend):
    actors = ActorStore(backend)
    sessions = SessionStore(backend)
    store = FragmentStore(backend, FragmentPartition.INSIGHT)

    async def seed():
        await actors.upsert(Actor(id="user", name="User"))
        await actors.upsert(Actor(id="other", name="Other"))
        await sessions.upsert(Session(id="s1"))
        await sessions.upsert(Session(id="s2"))

    asyncio.run(seed())
    return actors, sessions, store


def _store_all(store, fragments):
    async def scenario():
        for fragment in fragments:
            await store.store_fragment(fragment)

    asyncio.run(scenario())


class TestActorAndSessionStores:
    def test_upsert_updates_in_place(self, backend):
        actors = ActorStore(backend)

        async def scenario():
            await actors.upsert(Actor(id="u", name="First"))
            await actors.upsert(Actor(id="u", name="Second", is_assistant=True))
            return await actors.get("u"), await actors.get("missing")

        actor, missing = asyncio.run(scenario())
        assert actor == Actor(id="u", name="Second", is_assistant=True)
        assert missing is None

    def test_session_metadata_round_trip(self, backend):
        sessions = SessionStore(backend)

        async def scenario():
            await sessions.upsert(Session(id="s", metadata={"channel": "web", "tags": ["a"]}))
            return await sessions.get("s")

        assert asyncio.run(scenario()).metadata == {"channel": "web", "tags": ["a"]}


class TestStoreFragment:
    def test_unknown_actor_or_session_rejected(self, setup):
        _, _, store = setup

        with pytest.raises(NotFoundError):
            asyncio.run(store.store_fragment(_fragment("x", actor_id="ghost")))
        with pytest.raises(NotFoundError):
            asyncio.run(store.store_fragment(_fragment("x", session_id="nowhere")))

        assert asyncio.run(store.query(FragmentFilter())) == []

    def test_duplicate_id_rejected(self, setup):
        _, _, store = setup
        fragment = _fragment("once")
        asyncio.run(store.store_fragment(fragment))

        with pytest.raises(ValidationError):
            asyncio.run(store.store_fragment(fragment))

    def test_same_id_allowed_in_another_partition(self, setup, backend):
        _, _, store = setup
        personality = FragmentStore(backend, FragmentPartition.PERSONALITY)
        fragment = _fragment("shared id")

        asyncio.run(store.store_fragment(fragment))
        asyncio.run(personality.store_fragment(fragment))

        assert asyncio.run(store.get(fragment.id)).content == "shared id"
        assert asyncio.run(personality.get(fragment.id)).content == "shared id"

    def test_created_at_assigned_when_absent(self, setup):
        _, _, store = setup
        before = datetime.now(timezone.utc)
        stored = asyncio.run(store.store_fragment(Fragment(actor_id="user", session_id="s1", content="now")))

        assert stored.created_at is not None
        assert stored.created_at >= before - timedelta(seconds=1)
        assert asyncio.run(store.get(stored.id)) == stored

    def test_embedding_dimension_checked(self, setup):
        _, _, store = setup
        with pytest.raises(ValidationError):
            asyncio.run(store.store_fragment(_fragment("wrong", embedding=[1.0, 2.0])))
        with pytest.raises(ValidationError):
            asyncio.run(store.store_fragment(_fragment("empty", embedding=[])))

    def test_round_trip_preserves_fields(self, setup):
        _, _, store = setup
        fragment = _fragment("exact", embedding=[0.1, 0.2, 0.3], kind="fact", tags=["x", "y"])
        asyncio.run(store.store_fragment(fragment))

        loaded = asyncio.run(store.get(fragment.id))
        assert loaded == fragment
        assert loaded.embedding == np.asarray([0.1, 0.2, 0.3], dtype=np.float32).tolist()

    def test_empty_partition_name_rejected(self, backend):
        with pytest.raises(ConfigurationError):
            FragmentStore(backend, "")


class TestQuery:
    def test_most_recent_first_and_limit(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment(f"m{i}", minutes=i) for i in range(5)])

        results = asyncio.run(store.query(FragmentFilter(session_id="s1", limit=3)))
        assert [f.content for f in results] == ["m4", "m3", "m2"]

    def test_exact_filters_are_combined(self, setup):
        _, _, store = setup
        _store_all(store, [
            _fragment("a", 0),
            _fragment("b", 1, actor_id="other"),
            _fragment("c", 2, session_id="s2"),
            _fragment("d", 3, actor_id="other", session_id="s2"),
        ])

        results = asyncio.run(store.query(FragmentFilter(actor_id="other", session_id="s2")))
        assert [f.content for f in results] == ["d"]

    def test_time_range_is_inclusive(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment(f"m{i}", minutes=i) for i in range(5)])

        results = asyncio.run(store.query(FragmentFilter(start_time=_at(1), end_time=_at(3))))
        assert [f.content for f in results] == ["m3", "m2", "m1"]

    def test_naive_filter_times_read_as_utc(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment(f"m{i}", minutes=i) for i in range(3)])

        naive_start = _at(1).replace(tzinfo=None)
        results = asyncio.run(store.query(FragmentFilter(start_time=naive_start)))
        assert [f.content for f in results] == ["m2", "m1"]

    def test_metadata_operators(self, setup):
        _, _, store = setup
        _store_all(store, [
            _fragment("tea", 0, kind="fact", topic="green tea", tags=["drink"]),
            _fragment("coffee", 1, kind="fact", topic="coffee", tags=["drink", "morning"]),
            _fragment("walk", 2, kind="habit", topic="walking"),
            _fragment("untagged", 3),
        ])

        def contents(*conditions):
            query = FragmentFilter(metadata=list(conditions))
            return sorted(f.content for f in asyncio.run(store.query(query)))

        assert contents(MetadataCondition(key="kind", value="fact")) == ["coffee", "tea"]
        assert contents(MetadataCondition(key="kind", value="fact", operator="!=")) == ["walk"]
        assert contents(MetadataCondition(key="topic", value="tea", operator="contains")) == ["tea"]
        assert contents(MetadataCondition(key="tags", value="morning", operator="contains")) == ["coffee"]
        assert contents(MetadataCondition(key="kind", value=["habit", "other"], operator="in")) == ["walk"]
        assert contents(
            MetadataCondition(key="kind", value="fact"),
            MetadataCondition(key="tags", value="drink", operator=MetadataOperator.CONTAINS),
        ) == ["coffee", "tea"]

    def test_similarity_ranking(self, setup):
        _, _, store = setup
        _store_all(store, [
            _fragment("x-axis", 0, embedding=[1.0, 0.0, 0.0]),
            _fragment("y-axis", 1, embedding=[0.0, 1.0, 0.0]),
            _fragment("mostly-x", 2, embedding=[0.9, 0.1, 0.0]),
            _fragment("no vector", 3),
        ])

        results = asyncio.run(store.query(FragmentFilter(embedding=[1.0, 0.0, 0.0], limit=2)))
        assert [f.content for f in results] == ["x-axis", "mostly-x"]

    def test_similarity_ties_prefer_recent(self, setup):
        _, _, store = setup
        _store_all(store, [
            _fragment("older", 0, embedding=[0.0, 0.0, 1.0]),
            _fragment("newer", 1, embedding=[0.0, 0.0, 2.0]),
        ])

        results = asyncio.run(store.query(FragmentFilter(embedding=[0.0, 0.0, 1.0])))
        assert [f.content for f in results] == ["newer", "older"]

    def test_similarity_excludes_fragments_without_embedding(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment("plain", 0)])

        assert asyncio.run(store.query(FragmentFilter(embedding=[1.0, 0.0, 0.0]))) == []

    @pytest.mark.parametrize("query", [
        FragmentFilter(limit=0),
        FragmentFilter(start_time=T0, end_time=T0 - timedelta(seconds=1)),
        FragmentFilter(embedding=[]),
        FragmentFilter(embedding=[1.0, 0.0]),
        FragmentFilter(metadata=[MetadataCondition(key="", value="x")]),
        FragmentFilter(metadata=[MetadataCondition(key="k", value="x", operator="in")]),
    ])
    def test_invalid_filters_rejected(self, setup, query):
        _, _, store = setup
        with pytest.raises(ValidationError):
            asyncio.run(store.query(query))

    def test_write_invalidates_cached_session_query(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment("first", 0)])
        query = FragmentFilter(session_id="s1")

        assert len(asyncio.run(store.query(query))) == 1
        _store_all(store, [_fragment("second", 1)])
        assert [f.content for f in asyncio.run(store.query(query))] == ["second", "first"]

    def test_write_invalidates_cached_sessionless_query(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment("first", 0)])
        query = FragmentFilter(actor_id="user")

        assert len(asyncio.run(store.query(query))) == 1
        _store_all(store, [_fragment("elsewhere", 1, session_id="s2")])
        assert len(asyncio.run(store.query(query))) == 2

    def test_repeated_query_served_from_cache(self, setup):
        _, _, store = setup
        _store_all(store, [_fragment("first", 0)])
        query = FragmentFilter(session_id="s1")

        asyncio.run(store.query(query))
        asyncio.run(store.query(query))

        stats = asyncio.run(store.cache.get_stats())
        assert stats["hits"] == 1
        assert stats["misses"] == 1


class TestSQLitePersistence:
    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "memory.db"

        async def write():
            backend = SQLiteFragmentBackend(path, embedding_dimensions=3)
            await backend.upsert_actor(Actor(id="user"))
            await backend.upsert_session(Session(id="s1"))
            await FragmentStore(backend, "insight").store_fragment(
                _fragment("durable", embedding=[0.5, 0.25, 0.125])
            )
            await backend.close()

        async def read():
            backend = SQLiteFragmentBackend(path, embedding_dimensions=3)
            results = await FragmentStore(backend, "insight").query(FragmentFilter(session_id="s1"))
            await backend.close()
            return results

        asyncio.run(write())
        results = asyncio.run(read())

        assert [f.content for f in results] == ["durable"]
        assert results[0].embedding == [0.5, 0.25, 0.125]
        assert results[0].created_at == T0

    def test_embedding_size_recovered_on_reopen(self, tmp_path):
        path = tmp_path / "memory.db"

        async def write():
            backend = SQLiteFragmentBackend(path)
            await backend.upsert_actor(Actor(id="user"))
            await backend.upsert_session(Session(id="s1"))
            await FragmentStore(backend, "insight").store_fragment(_fragment("sized", embedding=[1.0, 0.0, 0.0]))
            await backend.close()

        asyncio.run(write())
        backend = SQLiteFragmentBackend(path)
        try:
            assert backend.embedding_dimensions == 3
        finally:
            asyncio.run(backend.close())


class TestDefaultSettingsDimensions:
    def setup_method(self):
        self.stores = build_stores(Settings())

        async def seed():
            await self.stores.actors.upsert(Actor(id="user"))
            await self.stores.sessions.upsert(Session(id="s1"))

        asyncio.run(seed())

    def test_first_embedding_fixes_the_size(self):
        store = self.stores.insights
        assert self.stores.backend.embedding_dimensions is None

        asyncio.run(store.store_fragment(_fragment("first", 0, embedding=[1.0, 0.0, 0.0])))
        with pytest.raises(ValidationError):
            asyncio.run(store.store_fragment(_fragment("short", 1, embedding=[1.0, 0.0])))
        with pytest.raises(ValidationError):
            asyncio.run(store.query(FragmentFilter(session_id="s1", embedding=[1.0, 0.0])))

        results = asyncio.run(store.query(FragmentFilter(session_id="s1", embedding=[1.0, 0.0, 0.0])))
        assert [f.content for f in results] == ["first"]

    def test_size_shared_across_partitions(self):
        asyncio.run(self.stores.insights.store_fragment(_fragment("first", embedding=[1.0, 0.0])))
        with pytest.raises(ValidationError):
            asyncio.run(self.stores.personality.store_fragment(_fragment("other", embedding=[1.0, 0.0, 0.0])))

    def test_rejected_fragment_does_not_fix_the_size(self):
        with pytest.raises(NotFoundError):
            asyncio.run(self.stores.insights.store_fragment(
                _fragment("ghost", actor_id="ghost", embedding=[1.0, 0.0])
            ))
        assert self.stores.backend.embedding_dimensions is None


class TestMetadataSerialization:
    def test_non_json_metadata_rejected(self, setup):
        _, _, store = setup
        with pytest.raises(ValidationError):
            asyncio.run(store.store_fragment(_fragment("when", seen_at=T0)))
        assert asyncio.run(store.query(FragmentFilter())) == []

    def test_validate_fragment_does_not_write(self, setup):
        _, _, store = setup
        fragment = _fragment("checked")
        asyncio.run(store.validate_fragment(fragment))
        assert asyncio.run(store.get(fragment.id)) is None
