"""Neo4j implementation of the PersistenceCoordinator interface."""

from datetime import datetime
from typing import List, Dict, Any, Optional
from neo4j import AsyncGraphDatabase, basic_auth
import asyncio
import time
import json

from coach.core.errors import PersistenceError
from coach.core.interfaces import PersistenceCoordinator
from coach.models.memory import MemoryEntry, MemoryAccessLog
from coach.models.message import Message, Conversation, AttachmentData
from server.config import config
from server.logging_config import get_logger

logger = get_logger(__name__)


class Neo4jPersistence(PersistenceCoordinator):
    """Stores conversations, messages and memories as Neo4j nodes.

    (:User)-[:HAS_CONVERSATION]->(:Conversation)-[:HAS_MESSAGE]->(:Message)
    (:User)-[:REMEMBERS]->(:Memory)<-[:ACCESSED]-(:AccessLog)
    """

    def __init__(self):
        self.uri = config.NEO4J.URI
        self.username = config.NEO4J.USER
        self.password = config.NEO4J.PASSWORD
        self.driver = None

    async def initialize(self) -> None:
        """Initialize the connection and wait for Neo4j to be ready."""
        await self._connect()
        await self._wait_for_ready()
        await self._ensure_constraints()

    async def _connect(self) -> None:
        self.driver = AsyncGraphDatabase.driver(
            self.uri,
            auth=basic_auth(self.username, self.password),
            max_connection_lifetime=3600
        )

    async def _wait_for_ready(self, timeout: int = 60) -> None:
        start_time = time.time()
        while True:
            try:
                if not self.driver:
                    await self._connect()
                async with self.driver.session() as session:
                    await session.run("RETURN 1")
                    logger.info("Neo4j is ready.")
                    return
            except Exception as e:
                logger.debug(f"Waiting for Neo4j... {str(e)}")
                elapsed_time = time.time() - start_time
                if elapsed_time > timeout:
                    logger.error(f"Failed to connect to Neo4j after {timeout} seconds.")
                    raise e
                await asyncio.sleep(2)

    async def _ensure_constraints(self) -> None:
        statements = [
            "CREATE CONSTRAINT conversation_id IF NOT EXISTS FOR (c:Conversation) REQUIRE c.id IS UNIQUE",
            "CREATE CONSTRAINT message_id IF NOT EXISTS FOR (m:Message) REQUIRE m.id IS UNIQUE",
            "CREATE CONSTRAINT memory_id IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE",
        ]
        async with self.driver.session() as session:
            for statement in statements:
                await session.run(statement)

    async def close(self) -> None:
        if self.driver:
            await self.driver.close()
            self.driver = None

    async def _run(self, query: str, **params) -> List[Dict[str, Any]]:
        try:
            async with self.driver.session() as session:
                result = await session.run(query, **params)
                return await result.data()
        except Exception as e:
            logger.error(f"Neo4j query failed: {e}")
            raise PersistenceError(str(e)) from e

    # Conversations
    async def create_conversation(self, user_id: str, title: str) -> str:
        conversation = Conversation(user_id=user_id, title=title)
        query = """
        MERGE (u:User {id: $user_id})
        CREATE (c:Conversation {id: $id, user_id: $user_id, title: $title, created_at: $created_at})
        MERGE (u)-[:HAS_CONVERSATION]->(c)
        """
        await self._run(
            query,
            user_id=user_id,
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at.isoformat(),
        )
        logger.info(f"Created conversation {conversation.id} for user {user_id}")
        return conversation.id

    async def conversation_exists(self, conversation_id: str) -> bool:
        query = """
        MATCH (c:Conversation {id: $conversation_id})
        RETURN COUNT(c) > 0 AS exists
        """
        records = await self._run(query, conversation_id=conversation_id)
        return bool(records and records[0]["exists"])

    async def read_conversation(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        if limit is not None and limit <= 0:
            return []
        # Newest first so LIMIT keeps the tail, then flipped back to ascending
        query = """
        MATCH (:Conversation {id: $conversation_id})-[:HAS_MESSAGE]->(m:Message)
        RETURN m
        ORDER BY m.created_at DESC
        """
        params: Dict[str, Any] = {"conversation_id": conversation_id}
        if limit is not None:
            query += "\nLIMIT $limit"
            params["limit"] = limit
        records = await self._run(query, **params)
        messages = [self._to_message(dict(record["m"])) for record in records]
        messages.reverse()
        return messages

    async def write_message(self, message: Message) -> str:
        query = """
        MATCH (c:Conversation {id: $conversation_id})
        MERGE (m:Message {id: $id})
        SET m.conversation_id = $conversation_id,
            m.role = $role,
            m.content = $content,
            m.attachments = $attachments,
            m.metadata = $metadata,
            m.created_at = $created_at
        MERGE (c)-[:HAS_MESSAGE]->(m)
        RETURN m.id AS id
        """
        records = await self._run(
            query,
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role.value,
            content=message.content,
            attachments=json.dumps([a.model_dump(mode="json") for a in message.attachments]),
            metadata=json.dumps(message.metadata),
            created_at=message.created_at.isoformat(),
        )
        if not records:
            raise PersistenceError(f"Conversation {message.conversation_id} not found")
        return records[0]["id"]

    @staticmethod
    def _to_message(node: Dict[str, Any]) -> Message:
        return Message(
            id=node["id"],
            conversation_id=node["conversation_id"],
            role=node["role"],
            content=node.get("content") or "",
            attachments=[AttachmentData(**a) for a in json.loads(node.get("attachments") or "[]")],
            metadata=json.loads(node.get("metadata") or "{}"),
            created_at=datetime.fromisoformat(node["created_at"]),
        )

    # Memories
    async def read_memories(self, user_id: str) -> List[MemoryEntry]:
        query = """
        MATCH (:User {id: $user_id})-[:REMEMBERS]->(m:Memory)
        RETURN m
        """
        records = await self._run(query, user_id=user_id)
        return [self._to_memory(dict(record["m"])) for record in records]

    async def write_memory(self, entry: MemoryEntry) -> str:
        props = entry.model_dump(mode="json", exclude={"id", "user_id"})
        props["keywords"] = entry.keywords
        props["embedding"] = entry.embedding
        query = """
        MERGE (u:User {id: $user_id})
        MERGE (m:Memory {id: $id})
        SET m += $props, m.user_id = $user_id
        MERGE (u)-[:REMEMBERS]->(m)
        RETURN m.id AS id
        """
        records = await self._run(query, user_id=entry.user_id, id=entry.id, props=props)
        return records[0]["id"]

    async def record_memory_access(
        self,
        user_id: str,
        memory_id: str,
        accessed_at: datetime,
        importance_boost: float = 0.0,
        importance_floor: float = 0.0,
    ) -> Optional[MemoryEntry]:
        # Writing _lock first takes the node write lock before the counters are read
        query = """
        MATCH (:User {id: $user_id})-[:REMEMBERS]->(m:Memory {id: $memory_id})
        SET m._lock = true
        WITH m, coalesce(m.importance, 0.5) + $boost AS boosted
        WITH m, CASE WHEN boosted > $floor THEN boosted ELSE $floor END AS raised
        SET m.access_count = coalesce(m.access_count, 0) + 1,
            m.last_accessed = $accessed_at,
            m.importance = CASE WHEN raised > 1.0 THEN 1.0 ELSE raised END
        REMOVE m._lock
        RETURN m
        """
        records = await self._run(
            query,
            user_id=user_id,
            memory_id=memory_id,
            accessed_at=accessed_at.isoformat(),
            boost=importance_boost,
            floor=importance_floor,
        )
        return self._to_memory(dict(records[0]["m"])) if records else None

    async def set_memory_status(
        self, user_id: str, memory_id: str, is_active: bool, needs_review: bool
    ) -> Optional[MemoryEntry]:
        query = """
        MATCH (:User {id: $user_id})-[:REMEMBERS]->(m:Memory {id: $memory_id})
        SET m.is_active = $is_active, m.needs_review = $needs_review
        RETURN m
        """
        records = await self._run(
            query,
            user_id=user_id,
            memory_id=memory_id,
            is_active=is_active,
            needs_review=needs_review,
        )
        return self._to_memory(dict(records[0]["m"])) if records else None

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        query = """
        MATCH (:User {id: $user_id})-[:REMEMBERS]->(m:Memory {id: $memory_id})
        DETACH DELETE m
        RETURN COUNT(*) AS deleted
        """
        records = await self._run(query, user_id=user_id, memory_id=memory_id)
        return bool(records and records[0]["deleted"])

    @staticmethod
    def _to_memory(node: Dict[str, Any]) -> MemoryEntry:
        node = {k: v for k, v in node.items() if v is not None}
        return MemoryEntry(**node)

    async def append_access_log(self, entry: MemoryAccessLog) -> None:
        query = """
        MATCH (m:Memory {id: $memory_id})
        CREATE (a:AccessLog {
            conversation_id: $conversation_id,
            timestamp: $timestamp,
            relevance_score: $relevance_score
        })-[:ACCESSED]->(m)
        """
        await self._run(
            query,
            memory_id=entry.memory_id,
            conversation_id=entry.conversation_id,
            timestamp=entry.timestamp.isoformat(),
            relevance_score=entry.relevance_score,
        )
