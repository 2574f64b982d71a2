from .base import ContextStore
from .inmemory import InMemoryContextStore
from .store import MemoryStore

__all__ = ["ContextStore", "InMemoryContextStore", "MemoryStore"]
