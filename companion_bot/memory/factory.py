from __future__ import annotations

from typing import TYPE_CHECKING

from .base import ContextStore
from .inmemory import InMemoryContextStore
from .store import MemoryStore

if TYPE_CHECKING:
    from ..config import Settings


def build_memory_store(settings: "Settings") -> ContextStore:
    backend = settings.memory_backend
    if backend == "sqlite":
        return MemoryStore(settings.sqlite_path)
    if backend == "memory":
        return InMemoryContextStore()
    if backend == "postgres":
        if not settings.memory_postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        from .postgres_store import PostgresMemoryStore

        return PostgresMemoryStore(settings.memory_postgres_dsn)
    raise ValueError("MEMORY_BACKEND must be 'sqlite', 'postgres' or 'memory'")
