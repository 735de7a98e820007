from .interfaces import PersistenceCoordinator
from .factory import create_persistence, create_and_initialize_persistence

__all__ = [
    'PersistenceCoordinator',
    'create_persistence',
    'create_and_initialize_persistence',
]
