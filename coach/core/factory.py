"""Factory functions for creating persistence backend instances."""

from coach.core.interfaces import PersistenceCoordinator


def create_persistence(backend_type: str = "memory") -> PersistenceCoordinator:
    """Create a persistence backend based on config.

    Args:
        backend_type: Type of backend to use ("memory" or "neo4j")

    Returns:
        An uninitialized PersistenceCoordinator
    """
    if backend_type == "memory":
        from coach.core.backends.memory_store import InMemoryPersistence
        return InMemoryPersistence()
    elif backend_type == "neo4j":
        from coach.core.backends.neo4j_store import Neo4jPersistence
        return Neo4jPersistence()
    else:
        raise ValueError(f"Unknown backend type: {backend_type}")


async def create_and_initialize_persistence(backend_type: str = "memory") -> PersistenceCoordinator:
    """Create and initialize a persistence backend.

    This is the main entry point for getting a ready-to-use store.
    """
    persistence = create_persistence(backend_type)
    await persistence.initialize()
    return persistence
