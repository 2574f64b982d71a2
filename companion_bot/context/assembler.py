from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional

from ..errors import ContextStoreError
from .models import (
    CHANNEL_ACTIVE_USERS_CAP,
    CHANNEL_RECENT_TOPICS_CAP,
    SERVER_RECENT_EVENTS_CAP,
    USER_PERSONALITY_CAP,
    USER_RECENT_TOPICS_CAP,
    ChannelContext,
    ConversationMessage,
    HistoryEntry,
    MessageContext,
    MessageGuild,
    ProcessedMessage,
    ServerContext,
    UserProfile,
    merge_bounded,
    now_ms,
)
from .scoring import analyze_personality_traits, calculate_relevance_score, identify_contextual_cues
from .topics import extract_topics

if TYPE_CHECKING:
    from ..memory.base import ContextStore

logger = logging.getLogger("companion_bot")

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 50


class KeyedLocks:
    """Registry of asyncio locks keyed by entity id.

    `hold` takes several keys in sorted order so two callers that need
    overlapping keys cannot deadlock. A key's lock is dropped once no
    holder or waiter references it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._refs[key] - 1
        if remaining:
            self._refs[key] = remaining
            return
        del self._refs[key]
        del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        checked_out: list[str] = []
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True, slots=True)
class AssemblyResult:
    context: Optional[MessageContext] = None
    error: Optional[ContextStoreError] = None
    message_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.context is not None and self.error is None


def entity_lock_keys(message: ProcessedMessage) -> tuple[str, ...]:
    keys = [f"user:{message.author.id}", f"channel:{message.channel.id}"]
    if message.guild is not None:
        keys.append(f"server:{message.guild.id}")
    return tuple(keys)


class ContextAssembler:
    """Builds the per-message context snapshot and records the user turn.

    For one inbound message, under the user/channel/server locks:
    get-or-create the three entities, read recent channel history, score
    relevance and derive cues against the pre-message state, append the
    user turn, then fold the message into the profile, channel and server.
    """

    def __init__(
        self,
        store: "ContextStore",
        *,
        locks: KeyedLocks | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.locks = locks or KeyedLocks()
        self.history_limit = max(1, min(int(history_limit), MAX_HISTORY_LIMIT))
        self._clock = clock

    def _hour(self) -> int:
        return datetime.fromtimestamp(self._clock() / 1000).hour

    async def build(self, message: ProcessedMessage, *, history_limit: int | None = None) -> AssemblyResult:
        limit = self.history_limit if history_limit is None else max(1, min(int(history_limit), MAX_HISTORY_LIMIT))
        try:
            async with self.locks.hold(*entity_lock_keys(message)):
                return await self._build_locked(message, limit)
        except ContextStoreError as exc:
            logger.error(
                "Context store failure for message %s in channel %s: %s",
                message.id,
                message.channel.id,
                exc,
            )
            return AssemblyResult(error=exc)

    async def _build_locked(self, message: ProcessedMessage, limit: int) -> AssemblyResult:
        profile = await self._get_or_create_user(message)
        channel = await self._get_or_create_channel(message)
        server = await self._get_or_create_server(message) if message.guild is not None else None

        rows = await self.store.get_conversation_history(message.channel.id, limit)
        history = tuple(
            HistoryEntry(
                role=row.role,
                content=row.content,
                timestamp=row.timestamp,
                author=row.author,
                topics=tuple(extract_topics(row.content)),
            )
            for row in reversed(rows)
        )

        relevance = calculate_relevance_score(message, profile, channel, now_ms=self._clock())
        cues = identify_contextual_cues(message, history, hour=self._hour())

        message_id = await self.store.add_conversation_message(
            ConversationMessage(
                channel_id=message.channel.id,
                user_id=message.author.id,
                role="user",
                content=message.clean_content,
                timestamp=message.timestamp,
                author=message.author.username,
                relevance_score=relevance,
            )
        )

        topics = extract_topics(message.clean_content)
        profile = await self._update_user(profile, message, topics)
        channel = await self._update_channel(channel, message, topics)
        if server is not None:
            server = await self._update_server(server, message)

        context = MessageContext(
            message=message,
            user_profile=copy.deepcopy(profile),
            channel_context=copy.deepcopy(channel),
            server_context=copy.deepcopy(server),
            conversation_history=history,
            relevance_score=relevance,
            contextual_cues=tuple(cues),
        )
        return AssemblyResult(context=context, message_id=message_id)

    async def _get_or_create_user(self, message: ProcessedMessage) -> UserProfile:
        profile = await self.store.get_user_profile(message.author.id)
        if profile is not None:
            return profile
        logger.debug("Creating user profile for %s", message.author.username)
        return await self.store.create_user_profile(
            UserProfile(
                user_id=message.author.id,
                username=message.author.username,
                display_name=message.author.display_name,
                last_seen=self._clock(),
            )
        )

    async def _get_or_create_channel(self, message: ProcessedMessage) -> ChannelContext:
        channel = await self.store.get_channel_context(message.channel.id)
        if channel is not None:
            return channel
        logger.debug("Creating channel context for #%s", message.channel.name)
        return await self.store.create_channel_context(
            ChannelContext(
                channel_id=message.channel.id,
                channel_name=message.channel.name,
                channel_type=message.channel.type,
                last_activity=self._clock(),
            )
        )

    def _new_server(self, guild: MessageGuild) -> ServerContext:
        return ServerContext(
            server_id=guild.id,
            server_name=guild.name or "Unknown",
            owner_id=guild.owner_id,
            member_count=guild.member_count or 0,
            last_activity=self._clock(),
        )

    async def _get_or_create_server(self, message: ProcessedMessage) -> ServerContext:
        guild = message.guild
        assert guild is not None
        server = await self.store.get_server_context(guild.id)
        if server is not None:
            return server
        logger.debug("Creating server context for %s", guild.name)
        return await self.store.create_server_context(self._new_server(guild))

    async def _update_user(self, profile: UserProfile, message: ProcessedMessage, topics: list[str]) -> UserProfile:
        updated = replace(
            profile,
            username=message.author.username,
            display_name=message.author.display_name or profile.display_name,
            interaction_count=profile.interaction_count + 1,
            last_seen=max(profile.last_seen, message.timestamp),
            recent_topics=merge_bounded(profile.recent_topics, topics, USER_RECENT_TOPICS_CAP),
            personality=merge_bounded(
                profile.personality,
                analyze_personality_traits(message.clean_content),
                USER_PERSONALITY_CAP,
            ),
        )
        await self.store.update_user_profile(updated)
        return updated

    async def _update_channel(
        self,
        channel: ChannelContext,
        message: ProcessedMessage,
        topics: list[str],
    ) -> ChannelContext:
        updated = replace(
            channel,
            channel_name=message.channel.name or channel.channel_name,
            last_activity=max(channel.last_activity, message.timestamp),
            active_users=merge_bounded(channel.active_users, [message.author.id], CHANNEL_ACTIVE_USERS_CAP),
            recent_topics=merge_bounded(channel.recent_topics, topics, CHANNEL_RECENT_TOPICS_CAP),
        )
        await self.store.update_channel_context(updated)
        return updated

    async def _update_server(self, server: ServerContext, message: ProcessedMessage) -> ServerContext:
        guild = message.guild
        assert guild is not None
        updated = replace(
            server,
            server_name=guild.name or server.server_name,
            owner_id=guild.owner_id or server.owner_id,
            member_count=server.member_count if guild.member_count is None else guild.member_count,
            last_activity=max(server.last_activity, message.timestamp),
        )
        await self.store.update_server_context(updated)
        events = await self.store.add_server_recent_event(
            server.server_id,
            f"message:{message.author.username}",
            cap=SERVER_RECENT_EVENTS_CAP,
        )
        updated.recent_events = events
        return updated

    async def sync_server(self, guild: MessageGuild) -> ServerContext:
        """Upsert a server's metadata when the bot joins it or the guild changes."""
        async with self.locks.hold(f"server:{guild.id}"):
            server = await self.store.get_server_context(guild.id)
            if server is None:
                logger.info("Registering server context for %s", guild.name)
                return await self.store.create_server_context(self._new_server(guild))
            updated = replace(
                server,
                server_name=guild.name or server.server_name,
                owner_id=guild.owner_id or server.owner_id,
                member_count=server.member_count if guild.member_count is None else guild.member_count,
            )
            await self.store.update_server_context(updated)
            return copy.deepcopy(updated)

    async def record_assistant_turn(self, channel_id: str, content: str, *, timestamp: int | None = None) -> int:
        """Append a bot reply to the conversation log (relevance 0, no user id)."""
        return await self.store.add_conversation_message(
            ConversationMessage(
                channel_id=channel_id,
                user_id=None,
                role="assistant",
                content=content,
                timestamp=self._clock() if timestamp is None else timestamp,
                author="Bot",
                relevance_score=0.0,
            )
        )
