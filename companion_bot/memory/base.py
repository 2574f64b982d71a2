from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from ..context.models import ChannelContext, ConversationMessage, ServerContext, UserProfile

DAY_MS = 24 * 60 * 60 * 1000


class ContextStore(Protocol):
    """Persistence contract shared by the sqlite, postgres and in-memory backends.

    Backends raise `ContextStoreError` for any driver or I/O failure.
    `get_conversation_history` returns the newest rows first.
    """

    backend_name: str

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]: ...

    async def create_user_profile(self, profile: UserProfile) -> UserProfile: ...

    async def update_user_profile(self, profile: UserProfile) -> None: ...

    async def delete_user_profile(self, user_id: str) -> bool: ...

    async def list_user_profiles(self, limit: int = 100) -> List[UserProfile]: ...

    async def get_channel_context(self, channel_id: str) -> Optional[ChannelContext]: ...

    async def create_channel_context(self, context: ChannelContext) -> ChannelContext: ...

    async def update_channel_context(self, context: ChannelContext) -> None: ...

    async def delete_channel_context(self, channel_id: str) -> bool: ...

    async def list_channel_contexts(self, limit: int = 100) -> List[ChannelContext]: ...

    async def get_server_context(self, server_id: str) -> Optional[ServerContext]: ...

    async def create_server_context(self, context: ServerContext) -> ServerContext: ...

    async def update_server_context(self, context: ServerContext) -> None: ...

    async def delete_server_context(self, server_id: str) -> bool: ...

    async def list_server_contexts(self, limit: int = 100) -> List[ServerContext]: ...

    async def add_server_recent_event(self, server_id: str, event: str, *, cap: int = 10) -> List[str]: ...

    async def add_conversation_message(self, message: ConversationMessage) -> int: ...

    async def get_conversation_history(self, channel_id: str, limit: int = 50) -> List[ConversationMessage]: ...

    async def delete_old_conversation_history(self, older_than_days: int) -> int: ...

    async def cleanup_old_data(self, older_than_days: int = 30) -> Dict[str, int]: ...

    async def get_database_stats(self) -> Dict[str, int]: ...

    async def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def get_channel_stats(self, channel_id: str) -> Optional[Dict[str, Any]]: ...
