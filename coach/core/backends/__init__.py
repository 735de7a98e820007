"""Backend implementations for the persistence interface."""

from coach.core.backends.memory_store import InMemoryPersistence
from coach.core.backends.neo4j_store import Neo4jPersistence

__all__ = ['InMemoryPersistence', 'Neo4jPersistence']
