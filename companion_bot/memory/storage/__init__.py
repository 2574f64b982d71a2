from .channels import MemoryChannelsMixin
from .conversation import MemoryConversationMixin
from .profiles import MemoryProfilesMixin
from .schema import MemorySchemaMixin
from .servers import MemoryServersMixin
from .stats import MemoryStatsMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryProfilesMixin",
    "MemoryChannelsMixin",
    "MemoryServersMixin",
    "MemoryConversationMixin",
    "MemoryStatsMixin",
]
