"""
Abstract interface for the Persistence Coordinator.

The chat pipeline never talks to a database directly. Backends (in-process,
Neo4j) implement this contract and are chosen at startup.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from coach.models.memory import MemoryEntry, MemoryAccessLog
from coach.models.message import Message


class PersistenceCoordinator(ABC):
    """Durable storage for conversations, messages and memories."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize connection and ensure schema is ready."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass

    # Conversations
    @abstractmethod
    async def create_conversation(self, user_id: str, title: str) -> str:
        """Create a conversation and return its server-assigned id."""
        pass

    @abstractmethod
    async def conversation_exists(self, conversation_id: str) -> bool:
        pass

    @abstractmethod
    async def read_conversation(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        """Return the conversation's messages ordered by creation time.

        Args:
            conversation_id: Conversation to read
            limit: If given, only the most recent `limit` messages (still in
                ascending order)
        """
        pass

    @abstractmethod
    async def write_message(self, message: Message) -> str:
        """Persist a message and return its id. Writing the same id twice replaces it."""
        pass

    # Memories
    @abstractmethod
    async def read_memories(self, user_id: str) -> List[MemoryEntry]:
        """Return every stored memory for a user, including inactive ones."""
        pass

    @abstractmethod
    async def write_memory(self, entry: MemoryEntry) -> str:
        """Insert or replace a memory entry and return its id."""
        pass

    @abstractmethod
    async def record_memory_access(
        self,
        user_id: str,
        memory_id: str,
        accessed_at: datetime,
        importance_boost: float = 0.0,
        importance_floor: float = 0.0,
    ) -> Optional[MemoryEntry]:
        """Count one access of a memory in a single atomic update.

        Increments `access_count`, stamps `last_accessed` and sets importance
        to min(1.0, max(importance + importance_boost, importance_floor)), so
        importance never decreases. Returns the updated entry, or None if the
        memory does not exist.
        """
        pass

    @abstractmethod
    async def set_memory_status(
        self, user_id: str, memory_id: str, is_active: bool, needs_review: bool
    ) -> Optional[MemoryEntry]:
        """Update only the activation flags of a memory. None if it does not exist."""
        pass

    @abstractmethod
    async def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """Delete a memory. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def append_access_log(self, entry: MemoryAccessLog) -> None:
        pass
