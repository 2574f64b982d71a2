from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

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
from .storage.utils import (
    _dump_list,
    _load_list,
    _row_to_channel_context,
    _row_to_conversation_message,
    _row_to_server_context,
    _row_to_user_profile,
)

logger = logging.getLogger("companion_bot")

_USER_COLUMNS = """
    user_id, username, display_name, interests, personality, recent_topics,
    interaction_count, last_seen, preferred_response_style, timezone, language,
    bio, goals, preferences, notes
"""
_CHANNEL_COLUMNS = """
    channel_id, channel_name, channel_type, recent_topics, active_users,
    conversation_tone, last_activity
"""
_SERVER_COLUMNS = """
    server_id, server_name, owner_id, member_count, recent_events,
    listening_channels, ignoring_channels, command_prefix, last_activity
"""


class PostgresMemoryStore:
    """Postgres-backed memory store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator["asyncpg.Connection"]:
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ContextStoreError(f"Postgres memory store error: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self._connection() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise ContextStoreError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the bot before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("Postgres memory store ready (schema v%s)", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: per-server listen/ignore lists and command prefix (additive).
        await conn.execute(
            """
            ALTER TABLE server_contexts
            ADD COLUMN IF NOT EXISTS listening_channels JSONB NOT NULL DEFAULT '[]'::jsonb;

            ALTER TABLE server_contexts
            ADD COLUMN IF NOT EXISTS ignoring_channels JSONB NOT NULL DEFAULT '[]'::jsonb;

            ALTER TABLE server_contexts
            ADD COLUMN IF NOT EXISTS command_prefix TEXT NOT NULL DEFAULT '!';
            """
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                display_name TEXT,
                interests JSONB NOT NULL DEFAULT '[]'::jsonb,
                personality JSONB NOT NULL DEFAULT '[]'::jsonb,
                recent_topics JSONB NOT NULL DEFAULT '[]'::jsonb,
                interaction_count INTEGER NOT NULL DEFAULT 0 CHECK (interaction_count >= 0),
                last_seen BIGINT NOT NULL,
                preferred_response_style TEXT,
                timezone TEXT,
                language TEXT,
                bio TEXT,
                goals TEXT,
                preferences TEXT,
                notes TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS channel_contexts (
                channel_id TEXT PRIMARY KEY,
                channel_name TEXT NOT NULL,
                channel_type TEXT NOT NULL DEFAULT 'text',
                recent_topics JSONB NOT NULL DEFAULT '[]'::jsonb,
                active_users JSONB NOT NULL DEFAULT '[]'::jsonb,
                conversation_tone TEXT NOT NULL DEFAULT 'casual'
                    CHECK (conversation_tone IN ('casual', 'serious', 'technical', 'fun')),
                last_activity BIGINT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS server_contexts (
                server_id TEXT PRIMARY KEY,
                server_name TEXT NOT NULL,
                owner_id TEXT,
                member_count INTEGER NOT NULL DEFAULT 0,
                recent_events JSONB NOT NULL DEFAULT '[]'::jsonb,
                last_activity BIGINT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS conversation_messages (
                id BIGSERIAL PRIMARY KEY,
                channel_id TEXT NOT NULL,
                user_id TEXT,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                timestamp BIGINT NOT NULL,
                author TEXT,
                relevance_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                CHECK ((role = 'assistant') = (user_id IS NULL))
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_channel_recent
            ON conversation_messages(channel_id, timestamp DESC, id DESC);

            CREATE INDEX IF NOT EXISTS idx_conversation_timestamp
            ON conversation_messages(timestamp);

            CREATE INDEX IF NOT EXISTS idx_user_profiles_last_seen
            ON user_profiles(last_seen);

            CREATE INDEX IF NOT EXISTS idx_channel_contexts_last_activity
            ON channel_contexts(last_activity);
            """
        )

    # user profiles

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM user_profiles WHERE user_id = $1", str(user_id))
        return _row_to_user_profile(row) if row is not None else None

    @staticmethod
    def _user_args(profile: UserProfile) -> tuple:
        return (
            profile.user_id,
            profile.username,
            profile.display_name,
            _dump_list(profile.interests),
            _dump_list(profile.personality),
            _dump_list(profile.recent_topics),
            int(profile.interaction_count),
            int(profile.last_seen),
            profile.preferred_response_style,
            profile.timezone,
            profile.language,
            profile.bio,
            profile.goals,
            profile.preferences,
            profile.notes,
        )

    async def create_user_profile(self, profile: UserProfile) -> UserProfile:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO user_profiles ({_USER_COLUMNS})
                    VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    ON CONFLICT(user_id) DO NOTHING
                    """,
                    *self._user_args(profile),
                )
                row = await conn.fetchrow(
                    f"SELECT {_USER_COLUMNS} FROM user_profiles WHERE user_id = $1",
                    profile.user_id,
                )
        if row is None:
            raise ContextStoreError(f"User profile {profile.user_id} vanished after insert")
        return _row_to_user_profile(row)

    async def update_user_profile(self, profile: UserProfile) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO user_profiles ({_USER_COLUMNS})
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    display_name = EXCLUDED.display_name,
                    interests = EXCLUDED.interests,
                    personality = EXCLUDED.personality,
                    recent_topics = EXCLUDED.recent_topics,
                    interaction_count = GREATEST(user_profiles.interaction_count, EXCLUDED.interaction_count),
                    last_seen = EXCLUDED.last_seen,
                    preferred_response_style = EXCLUDED.preferred_response_style,
                    timezone = EXCLUDED.timezone,
                    language = EXCLUDED.language,
                    bio = EXCLUDED.bio,
                    goals = EXCLUDED.goals,
                    preferences = EXCLUDED.preferences,
                    notes = EXCLUDED.notes,
                    updated_at = NOW()
                """,
                *self._user_args(profile),
            )

    async def delete_user_profile(self, user_id: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM user_profiles WHERE user_id = $1", str(user_id))
        return _affected(status) > 0

    async def list_user_profiles(self, limit: int = 100) -> List[UserProfile]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_USER_COLUMNS} FROM user_profiles ORDER BY last_seen DESC LIMIT $1",
                max(1, int(limit)),
            )
        return [_row_to_user_profile(row) for row in rows]

    # channel contexts

    async def get_channel_context(self, channel_id: str) -> Optional[ChannelContext]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts WHERE channel_id = $1",
                str(channel_id),
            )
        return _row_to_channel_context(row) if row is not None else None

    @staticmethod
    def _channel_args(context: ChannelContext) -> tuple:
        return (
            context.channel_id,
            context.channel_name,
            context.channel_type,
            _dump_list(context.recent_topics),
            _dump_list(context.active_users),
            context.conversation_tone,
            int(context.last_activity),
        )

    async def create_channel_context(self, context: ChannelContext) -> ChannelContext:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO channel_contexts ({_CHANNEL_COLUMNS})
                    VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7)
                    ON CONFLICT(channel_id) DO NOTHING
                    """,
                    *self._channel_args(context),
                )
                row = await conn.fetchrow(
                    f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts WHERE channel_id = $1",
                    context.channel_id,
                )
        if row is None:
            raise ContextStoreError(f"Channel context {context.channel_id} vanished after insert")
        return _row_to_channel_context(row)

    async def update_channel_context(self, context: ChannelContext) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO channel_contexts ({_CHANNEL_COLUMNS})
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7)
                ON CONFLICT(channel_id) DO UPDATE SET
                    channel_name = EXCLUDED.channel_name,
                    channel_type = EXCLUDED.channel_type,
                    recent_topics = EXCLUDED.recent_topics,
                    active_users = EXCLUDED.active_users,
                    conversation_tone = EXCLUDED.conversation_tone,
                    last_activity = EXCLUDED.last_activity,
                    updated_at = NOW()
                """,
                *self._channel_args(context),
            )

    async def delete_channel_context(self, channel_id: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM channel_contexts WHERE channel_id = $1", str(channel_id))
        return _affected(status) > 0

    async def list_channel_contexts(self, limit: int = 100) -> List[ChannelContext]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts ORDER BY last_activity DESC LIMIT $1",
                max(1, int(limit)),
            )
        return [_row_to_channel_context(row) for row in rows]

    # server contexts

    async def get_server_context(self, server_id: str) -> Optional[ServerContext]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SERVER_COLUMNS} FROM server_contexts WHERE server_id = $1",
                str(server_id),
            )
        return _row_to_server_context(row) if row is not None else None

    @staticmethod
    def _server_args(context: ServerContext) -> tuple:
        return (
            context.server_id,
            context.server_name,
            context.owner_id,
            int(context.member_count),
            _dump_list(context.recent_events),
            _dump_list(context.listening_channels),
            _dump_list(context.ignoring_channels),
            context.command_prefix,
            int(context.last_activity),
        )

    async def create_server_context(self, context: ServerContext) -> ServerContext:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO server_contexts ({_SERVER_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8, $9)
                    ON CONFLICT(server_id) DO NOTHING
                    """,
                    *self._server_args(context),
                )
                row = await conn.fetchrow(
                    f"SELECT {_SERVER_COLUMNS} FROM server_contexts WHERE server_id = $1",
                    context.server_id,
                )
        if row is None:
            raise ContextStoreError(f"Server context {context.server_id} vanished after insert")
        return _row_to_server_context(row)

    async def update_server_context(self, context: ServerContext) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO server_contexts ({_SERVER_COLUMNS})
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8, $9)
                ON CONFLICT(server_id) DO UPDATE SET
                    server_name = EXCLUDED.server_name,
                    owner_id = EXCLUDED.owner_id,
                    member_count = EXCLUDED.member_count,
                    recent_events = EXCLUDED.recent_events,
                    listening_channels = EXCLUDED.listening_channels,
                    ignoring_channels = EXCLUDED.ignoring_channels,
                    command_prefix = EXCLUDED.command_prefix,
                    last_activity = EXCLUDED.last_activity,
                    updated_at = NOW()
                """,
                *self._server_args(context),
            )

    async def delete_server_context(self, server_id: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM server_contexts WHERE server_id = $1", str(server_id))
        return _affected(status) > 0

    async def list_server_contexts(self, limit: int = 100) -> List[ServerContext]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_SERVER_COLUMNS} FROM server_contexts ORDER BY last_activity DESC LIMIT $1",
                max(1, int(limit)),
            )
        return [_row_to_server_context(row) for row in rows]

    async def add_server_recent_event(
        self,
        server_id: str,
        event: str,
        *,
        cap: int = SERVER_RECENT_EVENTS_CAP,
    ) -> List[str]:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT recent_events FROM server_contexts WHERE server_id = $1 FOR UPDATE",
                    str(server_id),
                )
                if row is None:
                    raise ContextStoreError(f"Unknown server context {server_id}")
                events = push_front_bounded(_load_list(row["recent_events"]), event, cap)
                await conn.execute(
                    """
                    UPDATE server_contexts
                    SET recent_events = $2::jsonb, updated_at = NOW()
                    WHERE server_id = $1
                    """,
                    str(server_id),
                    _dump_list(events),
                )
        return events

    # conversation log

    async def add_conversation_message(self, message: ConversationMessage) -> int:
        async with self._connection() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO conversation_messages (
                    channel_id, user_id, role, content, timestamp, author, relevance_score
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING id
                """,
                message.channel_id,
                message.user_id,
                message.role,
                message.content,
                int(message.timestamp),
                message.author,
                float(message.relevance_score),
            )
        return int(message_id)

    async def get_conversation_history(self, channel_id: str, limit: int = 50) -> List[ConversationMessage]:
        if limit <= 0:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, channel_id, user_id, role, content, timestamp, author, relevance_score
                FROM conversation_messages
                WHERE channel_id = $1
                ORDER BY timestamp DESC, id DESC
                LIMIT $2
                """,
                str(channel_id),
                int(limit),
            )
        return [_row_to_conversation_message(row) for row in rows]

    async def delete_old_conversation_history(self, older_than_days: int) -> int:
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM conversation_messages WHERE timestamp < $1", cutoff)
        return _affected(status)

    async def cleanup_old_data(self, older_than_days: int = 30) -> Dict[str, int]:
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        async with self._connection() as conn:
            async with conn.transaction():
                messages = await conn.execute("DELETE FROM conversation_messages WHERE timestamp < $1", cutoff)
                users = await conn.execute("DELETE FROM user_profiles WHERE last_seen < $1", cutoff)
                channels = await conn.execute("DELETE FROM channel_contexts WHERE last_activity < $1", cutoff)
        return {"messages": _affected(messages), "users": _affected(users), "channels": _affected(channels)}

    # statistics

    async def get_database_stats(self) -> Dict[str, int]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    (SELECT COUNT(*) FROM user_profiles) AS users,
                    (SELECT COUNT(*) FROM channel_contexts) AS channels,
                    (SELECT COUNT(*) FROM server_contexts) AS servers,
                    (SELECT COUNT(*) FROM conversation_messages) AS messages,
                    (SELECT COUNT(*) FROM conversation_messages WHERE role = 'user') AS user_messages,
                    (SELECT COUNT(*) FROM conversation_messages WHERE role = 'assistant') AS assistant_messages
                """
            )
        return {key: int(row[key] or 0) for key in row.keys()}

    async def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    p.interaction_count,
                    p.last_seen,
                    (SELECT COUNT(*) FROM conversation_messages m WHERE m.user_id = p.user_id) AS message_count
                FROM user_profiles p
                WHERE p.user_id = $1
                """,
                str(user_id),
            )
        if row is None:
            return None
        return {
            "interaction_count": int(row["interaction_count"]),
            "message_count": int(row["message_count"]),
            "last_seen": int(row["last_seen"]),
        }

    async def get_channel_stats(self, channel_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    c.active_users,
                    c.last_activity,
                    (SELECT COUNT(*) FROM conversation_messages m WHERE m.channel_id = c.channel_id) AS message_count,
                    (
                        SELECT COUNT(*) FROM conversation_messages m
                        WHERE m.channel_id = c.channel_id AND m.role = 'assistant'
                    ) AS assistant_messages
                FROM channel_contexts c
                WHERE c.channel_id = $1
                """,
                str(channel_id),
            )
        if row is None:
            return None
        return {
            "message_count": int(row["message_count"]),
            "assistant_messages": int(row["assistant_messages"]),
            "active_users": len(_load_list(row["active_users"])),
            "last_activity": int(row["last_activity"]),
        }


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
