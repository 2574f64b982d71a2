from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional

from ..context.models import (
    SERVER_RECENT_EVENTS_CAP,
    ChannelContext,
    ConversationMessage,
    ServerContext,
    UserProfile,
    now_ms,
    push_front_bounded,
)
from ..errors import ContextStoreError
from .base import DAY_MS


class InMemoryContextStore:
    """Dict-backed store with the same contract as the relational backends.

    Values are copied on the way in and out so callers never share state
    with the store.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self.users: dict[str, UserProfile] = {}
        self.channels: dict[str, ChannelContext] = {}
        self.servers: dict[str, ServerContext] = {}
        self.messages: list[ConversationMessage] = []
        self._next_message_id = 1
        self._closed = False

    async def init(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    async def ping(self) -> None:
        self._check_open()

    def _check_open(self) -> None:
        if self._closed:
            raise ContextStoreError("In-memory store is closed")

    async def _yield(self) -> None:
        # Mimic an I/O round trip so interleavings look like a real backend.
        self._check_open()
        await asyncio.sleep(0)

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        await self._yield()
        profile = self.users.get(str(user_id))
        return copy.deepcopy(profile) if profile is not None else None

    async def create_user_profile(self, profile: UserProfile) -> UserProfile:
        await self._yield()
        stored = self.users.setdefault(profile.user_id, copy.deepcopy(profile))
        return copy.deepcopy(stored)

    async def update_user_profile(self, profile: UserProfile) -> None:
        await self._yield()
        existing = self.users.get(profile.user_id)
        updated = copy.deepcopy(profile)
        if existing is not None:
            updated.interaction_count = max(existing.interaction_count, updated.interaction_count)
        self.users[profile.user_id] = updated

    async def delete_user_profile(self, user_id: str) -> bool:
        await self._yield()
        return self.users.pop(str(user_id), None) is not None

    async def list_user_profiles(self, limit: int = 100) -> List[UserProfile]:
        await self._yield()
        ordered = sorted(self.users.values(), key=lambda item: item.last_seen, reverse=True)
        return [copy.deepcopy(item) for item in ordered[: max(1, int(limit))]]

    async def get_channel_context(self, channel_id: str) -> Optional[ChannelContext]:
        await self._yield()
        context = self.channels.get(str(channel_id))
        return copy.deepcopy(context) if context is not None else None

    async def create_channel_context(self, context: ChannelContext) -> ChannelContext:
        await self._yield()
        stored = self.channels.setdefault(context.channel_id, copy.deepcopy(context))
        return copy.deepcopy(stored)

    async def update_channel_context(self, context: ChannelContext) -> None:
        await self._yield()
        self.channels[context.channel_id] = copy.deepcopy(context)

    async def delete_channel_context(self, channel_id: str) -> bool:
        await self._yield()
        return self.channels.pop(str(channel_id), None) is not None

    async def list_channel_contexts(self, limit: int = 100) -> List[ChannelContext]:
        await self._yield()
        ordered = sorted(self.channels.values(), key=lambda item: item.last_activity, reverse=True)
        return [copy.deepcopy(item) for item in ordered[: max(1, int(limit))]]

    async def get_server_context(self, server_id: str) -> Optional[ServerContext]:
        await self._yield()
        context = self.servers.get(str(server_id))
        return copy.deepcopy(context) if context is not None else None

    async def create_server_context(self, context: ServerContext) -> ServerContext:
        await self._yield()
        stored = self.servers.setdefault(context.server_id, copy.deepcopy(context))
        return copy.deepcopy(stored)

    async def update_server_context(self, context: ServerContext) -> None:
        await self._yield()
        self.servers[context.server_id] = copy.deepcopy(context)

    async def delete_server_context(self, server_id: str) -> bool:
        await self._yield()
        return self.servers.pop(str(server_id), None) is not None

    async def list_server_contexts(self, limit: int = 100) -> List[ServerContext]:
        await self._yield()
        ordered = sorted(self.servers.values(), key=lambda item: item.last_activity, reverse=True)
        return [copy.deepcopy(item) for item in ordered[: max(1, int(limit))]]

    async def add_server_recent_event(
        self,
        server_id: str,
        event: str,
        *,
        cap: int = SERVER_RECENT_EVENTS_CAP,
    ) -> List[str]:
        await self._yield()
        context = self.servers.get(str(server_id))
        if context is None:
            raise ContextStoreError(f"Unknown server context {server_id}")
        context.recent_events = push_front_bounded(context.recent_events, event, cap)
        return list(context.recent_events)

    async def add_conversation_message(self, message: ConversationMessage) -> int:
        await self._yield()
        stored = copy.deepcopy(message)
        stored.id = self._next_message_id
        self._next_message_id += 1
        self.messages.append(stored)
        return int(stored.id)

    async def get_conversation_history(self, channel_id: str, limit: int = 50) -> List[ConversationMessage]:
        await self._yield()
        if limit <= 0:
            return []
        rows = [row for row in self.messages if row.channel_id == str(channel_id)]
        rows.sort(key=lambda row: (row.timestamp, row.id or 0), reverse=True)
        return [copy.deepcopy(row) for row in rows[:limit]]

    async def delete_old_conversation_history(self, older_than_days: int) -> int:
        await self._yield()
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        before = len(self.messages)
        self.messages = [row for row in self.messages if row.timestamp >= cutoff]
        return before - len(self.messages)

    async def cleanup_old_data(self, older_than_days: int = 30) -> Dict[str, int]:
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        removed_messages = await self.delete_old_conversation_history(older_than_days)
        stale_users = [key for key, value in self.users.items() if value.last_seen < cutoff]
        stale_channels = [key for key, value in self.channels.items() if value.last_activity < cutoff]
        for key in stale_users:
            del self.users[key]
        for key in stale_channels:
            del self.channels[key]
        return {"messages": removed_messages, "users": len(stale_users), "channels": len(stale_channels)}

    async def get_database_stats(self) -> Dict[str, int]:
        await self._yield()
        assistant = sum(1 for row in self.messages if row.role == "assistant")
        return {
            "users": len(self.users),
            "channels": len(self.channels),
            "servers": len(self.servers),
            "messages": len(self.messages),
            "user_messages": len(self.messages) - assistant,
            "assistant_messages": assistant,
        }

    async def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        await self._yield()
        profile = self.users.get(str(user_id))
        if profile is None:
            return None
        return {
            "interaction_count": profile.interaction_count,
            "message_count": sum(1 for row in self.messages if row.user_id == str(user_id)),
            "last_seen": profile.last_seen,
        }

    async def get_channel_stats(self, channel_id: str) -> Optional[Dict[str, Any]]:
        await self._yield()
        context = self.channels.get(str(channel_id))
        if context is None:
            return None
        rows = [row for row in self.messages if row.channel_id == str(channel_id)]
        return {
            "message_count": len(rows),
            "assistant_messages": sum(1 for row in rows if row.role == "assistant"),
            "active_users": len(context.active_users),
            "last_activity": context.last_activity,
        }
