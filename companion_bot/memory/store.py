from __future__ import annotations

from .storage.channels import MemoryChannelsMixin
from .storage.conversation import MemoryConversationMixin
from .storage.profiles import MemoryProfilesMixin
from .storage.schema import MemorySchemaMixin
from .storage.servers import MemoryServersMixin
from .storage.stats import MemoryStatsMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryProfilesMixin,
    MemoryChannelsMixin,
    MemoryServersMixin,
    MemoryConversationMixin,
    MemoryStatsMixin,
):
    """SQLite-backed user, channel and server memory plus the conversation log."""

    backend_name = "sqlite"
