"""Unit tests for the persistence backends."""

import json
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from coach.core.backends.memory_store import InMemoryPersistence
from coach.core.backends.neo4j_store import Neo4jPersistence
from coach.core.errors import PersistenceError
from coach.core.factory import create_persistence
from coach.models.memory import MemoryAccessLog, MemoryEntry
from coach.models.message import AttachmentData, Message, Role


def message(conversation_id, content, minutes=0, **kwargs):
    return Message(
        conversation_id=conversation_id,
        role=kwargs.pop("role", Role.USER),
        content=content,
        created_at=datetime(2025, 3, 1, 9, 0) + timedelta(minutes=minutes),
        **kwargs,
    )


def mock_driver(records=None, error=None):
    result = MagicMock()
    result.data = AsyncMock(return_value=records or [])
    session = MagicMock()
    session.run = AsyncMock(return_value=result, side_effect=error)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    driver = MagicMock()
    driver.session.return_value = session
    return driver, session


class TestFactory:

    def test_memory_backend(self):
        assert isinstance(create_persistence("memory"), InMemoryPersistence)

    def test_neo4j_backend(self):
        assert isinstance(create_persistence("neo4j"), Neo4jPersistence)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend type"):
            create_persistence("sqlite")


class TestInMemoryPersistence:

    @pytest.mark.asyncio
    async def test_messages_in_creation_order(self, store):
        conversation_id = await store.create_conversation("user-1", "Run plan")
        await store.write_message(message(conversation_id, "second", minutes=2))
        await store.write_message(message(conversation_id, "first", minutes=1))

        messages = await store.read_conversation(conversation_id)

        assert [m.content for m in messages] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_limit_keeps_most_recent(self, store):
        conversation_id = await store.create_conversation("user-1", "Run plan")
        for i in range(5):
            await store.write_message(message(conversation_id, f"m{i}", minutes=i))

        assert [m.content for m in await store.read_conversation(conversation_id, limit=2)] == ["m3", "m4"]
        assert await store.read_conversation(conversation_id, limit=0) == []

    @pytest.mark.asyncio
    async def test_same_id_replaces(self, store):
        conversation_id = await store.create_conversation("user-1", "Run plan")
        original = message(conversation_id, "partial", role=Role.ASSISTANT)
        await store.write_message(original)
        await store.write_message(original.model_copy(update={"content": "complete"}))

        messages = await store.read_conversation(conversation_id)

        assert len(messages) == 1
        assert messages[0].content == "complete"

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store):
        with pytest.raises(PersistenceError):
            await store.write_message(message("missing", "hello"))
        assert not await store.conversation_exists("missing")
        assert await store.read_conversation("missing") == []

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self, store):
        entry = MemoryEntry(user_id="user-1", content="Vegetarian")
        await store.write_memory(entry)

        fetched = (await store.read_memories("user-1"))[0]
        fetched.importance = 1.0

        assert (await store.read_memories("user-1"))[0].importance == 0.5

    @pytest.mark.asyncio
    async def test_memories_scoped_per_user(self, store):
        entry = MemoryEntry(user_id="user-1", content="Vegetarian")
        await store.write_memory(entry)

        assert await store.read_memories("user-2") == []
        assert await store.delete_memory("user-2", entry.id) is False
        assert await store.delete_memory("user-1", entry.id) is True

    @pytest.mark.asyncio
    async def test_record_access_updates_in_place(self, store):
        entry = MemoryEntry(user_id="user-1", content="Vegetarian", importance=0.8, access_count=1)
        await store.write_memory(entry)
        now = datetime(2025, 3, 2, 8, 0)

        updated = await store.record_memory_access(
            "user-1", entry.id, now, importance_boost=0.05, importance_floor=0.5
        )

        assert updated.access_count == 2
        assert updated.last_accessed == now
        assert updated.importance == pytest.approx(0.85)
        stored = (await store.read_memories("user-1"))[0]
        assert stored.access_count == 2 and stored.importance == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_record_access_never_lowers_and_caps_importance(self, store):
        entry = MemoryEntry(user_id="user-1", content="Vegetarian", importance=0.9)
        await store.write_memory(entry)

        await store.record_memory_access("user-1", entry.id, datetime.utcnow())
        assert (await store.read_memories("user-1"))[0].importance == pytest.approx(0.9)

        await store.record_memory_access("user-1", entry.id, datetime.utcnow(), importance_boost=0.5)
        assert (await store.read_memories("user-1"))[0].importance == 1.0

    @pytest.mark.asyncio
    async def test_memory_updates_on_missing_entry(self, store):
        assert await store.record_memory_access("user-1", "missing", datetime.utcnow()) is None
        assert await store.set_memory_status("user-1", "missing", True, False) is None

    @pytest.mark.asyncio
    async def test_set_memory_status(self, store):
        entry = MemoryEntry(user_id="user-1", content="Vegetarian", is_active=False, needs_review=True)
        await store.write_memory(entry)

        approved = await store.set_memory_status("user-1", entry.id, is_active=True, needs_review=False)

        assert approved.is_active and not approved.needs_review
        assert (await store.read_memories("user-1"))[0].is_active


class TestNeo4jPersistence:

    @pytest.fixture
    def neo4j_store(self):
        return Neo4jPersistence()

    @pytest.mark.asyncio
    async def test_write_message_serializes_attachments(self, neo4j_store):
        driver, session = mock_driver(records=[{"id": "m1"}])
        neo4j_store.driver = driver
        photo = AttachmentData(file_name="meal.png", file_type="image/png")
        msg = Message(id="m1", conversation_id="c1", role=Role.USER, content="look", attachments=[photo])

        assert await neo4j_store.write_message(msg) == "m1"

        params = session.run.call_args.kwargs
        assert params["role"] == "user"
        assert json.loads(params["attachments"])[0]["file_name"] == "meal.png"
        assert json.loads(params["metadata"]) == {}

    @pytest.mark.asyncio
    async def test_write_message_to_missing_conversation(self, neo4j_store):
        neo4j_store.driver, _ = mock_driver(records=[])
        with pytest.raises(PersistenceError, match="not found"):
            await neo4j_store.write_message(Message(conversation_id="c1", role=Role.USER, content="x"))

    @pytest.mark.asyncio
    async def test_read_conversation_returns_ascending(self, neo4j_store):
        newest = {"m": {
            "id": "2", "conversation_id": "c1", "role": "assistant", "content": "reply",
            "attachments": "[]", "metadata": json.dumps({"cancelled": True}),
            "created_at": "2025-03-01T09:02:00",
        }}
        oldest = {"m": {
            "id": "1", "conversation_id": "c1", "role": "user", "content": "hi",
            "attachments": "[]", "metadata": "{}", "created_at": "2025-03-01T09:01:00",
        }}
        neo4j_store.driver, session = mock_driver(records=[newest, oldest])

        messages = await neo4j_store.read_conversation("c1", limit=2)

        assert [m.id for m in messages] == ["1", "2"]
        assert messages[1].cancelled
        assert session.run.call_args.kwargs["limit"] == 2

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_errors(self, neo4j_store):
        neo4j_store.driver, _ = mock_driver(error=RuntimeError("connection refused"))
        with pytest.raises(PersistenceError, match="connection refused"):
            await neo4j_store.conversation_exists("c1")

    @pytest.mark.asyncio
    async def test_memory_round_trip_from_node(self, neo4j_store):
        node = {
            "id": "mem-1", "user_id": "user-1", "content": "Vegetarian", "category": "preference",
            "importance": 0.7, "keywords": ["diet"], "embedding": [0.1, 0.2], "access_count": 2,
            "created_at": "2025-03-01T09:00:00", "is_active": True, "needs_review": False,
            "last_accessed": None,
        }
        neo4j_store.driver, _ = mock_driver(records=[{"m": node}])

        memories = await neo4j_store.read_memories("user-1")

        assert memories[0].id == "mem-1"
        assert memories[0].category.value == "preference"
        assert memories[0].last_accessed is None

    @pytest.mark.asyncio
    async def test_access_log_written(self, neo4j_store):
        neo4j_store.driver, session = mock_driver()
        await neo4j_store.append_access_log(
            MemoryAccessLog(memory_id="mem-1", conversation_id="c1", relevance_score=0.9)
        )
        assert session.run.call_args.kwargs["memory_id"] == "mem-1"

    @pytest.mark.asyncio
    async def test_record_access_is_a_single_statement(self, neo4j_store):
        node = {
            "id": "mem-1", "user_id": "user-1", "content": "Vegetarian", "importance": 0.85,
            "access_count": 3, "last_accessed": "2025-03-02T08:00:00",
            "created_at": "2025-03-01T09:00:00",
        }
        neo4j_store.driver, session = mock_driver(records=[{"m": node}])

        updated = await neo4j_store.record_memory_access(
            "user-1", "mem-1", datetime(2025, 3, 2, 8, 0), importance_boost=0.05, importance_floor=0.5
        )

        assert session.run.await_count == 1
        query = session.run.call_args.args[0]
        assert "m.access_count = coalesce(m.access_count, 0) + 1" in query
        params = session.run.call_args.kwargs
        assert params["boost"] == 0.05 and params["floor"] == 0.5
        assert params["accessed_at"] == "2025-03-02T08:00:00"
        assert updated.access_count == 3 and updated.importance == 0.85

    @pytest.mark.asyncio
    async def test_record_access_on_missing_memory(self, neo4j_store):
        neo4j_store.driver, _ = mock_driver(records=[])
        assert await neo4j_store.record_memory_access("user-1", "gone", datetime.utcnow()) is None
