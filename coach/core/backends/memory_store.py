"""In-process implementation of the PersistenceCoordinator interface."""

import asyncio
from datetime import datetime
from typing import List, Dict, Optional

from coach.core.errors import PersistenceError
from coach.core.interfaces import PersistenceCoordinator
from coach.models.memory import MemoryEntry, MemoryAccessLog
from coach.models.message import Message, Conversation
from server.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryPersistence(PersistenceCoordinator):
    """Dict-backed store for development and tests.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.memories: Dict[str, Dict[str, MemoryEntry]] = {}
        self.access_log: List[MemoryAccessLog] = []
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("In-memory persistence ready.")

    async def close(self) -> None:
        pass

    async def create_conversation(self, user_id: str, title: str) -> str:
        conversation = Conversation(user_id=user_id, title=title)
        async with self._lock:
            self.conversations[conversation.id] = conversation
            self.messages[conversation.id] = []
        return conversation.id

    async def conversation_exists(self, conversation_id: str) -> bool:
        return conversation_id in self.conversations

    async def read_conversation(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        messages = sorted(
            self.messages.get(conversation_id, []), key=lambda m: m.created_at
        )
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return [m.model_copy(deep=True) for m in messages]

    async def write_message(self, message: Message) -> str:
        if message.conversation_id not in self.conversations:
            raise PersistenceError(f"Conversation {message.conversation_id} not found")
        async with self._lock:
            messages = self.messages.setdefault(message.conversation_id, [])
            # Same id replaces, so a retried write never duplicates
            messages[:] = [m for m in messages if m.id != message.id]
            messages.append(message.model_copy(deep=True))
        return message.id

    async def read_memories(self, user_id: str) -> List[MemoryEntry]:
        return [
            m.model_copy(deep=True) for m in self.memories.get(user_id, {}).values()
        ]

    async def write_memory(self, entry: MemoryEntry) -> str:
        async with self._lock:
            self.memories.setdefault(entry.user_id, {})[entry.id] = entry.model_copy(deep=True)
        return entry.id

    async def record_memory_access(
        self,
        user_id: str,
        memory_id: str,
        accessed_at: datetime,
        importance_boost: float = 0.0,
        importance_floor: float = 0.0,
    ) -> Optional[MemoryEntry]:
        async with self._lock:
            entry = self.memories.get(user_id, {}).get(memory_id)
            if entry is None:
                return None
            entry.access_count += 1
            entry.last_accessed = accessed_at
            entry.importance = min(1.0, max(entry.importance + importance_boost, importance_floor))
            return entry.model_copy(deep=True)

    async def set_memory_status(
        self, user_id: str, memory_id: str, is_active: bool, needs_review: bool
    ) -> Optional[MemoryEntry]:
        async with self._lock:
            entry = self.memories.get(user_id, {}).get(memory_id)
            if entry is None:
                return None
            entry.is_active = is_active
            entry.needs_review = needs_review
            return entry.model_copy(deep=True)

    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        async with self._lock:
            return self.memories.get(user_id, {}).pop(memory_id, None) is not None

    async def append_access_log(self, entry: MemoryAccessLog) -> None:
        async with self._lock:
            self.access_log.append(entry.model_copy())
