from __future__ import annotations

import logging
import os
from pathlib import Path

import aiosqlite

from ...errors import ContextStoreError
from .utils import _sqlite_memory_connection

logger = logging.getLogger("companion_bot")


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    logger.warning("Resetting SQLite memory schema v%s -> v%s", version, self.SCHEMA_VERSION)
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise ContextStoreError(
                    "SQLite schema version mismatch detected (database is newer than this bot build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if not has_tables:
                await self._create_schema(db)
            elif version != self.SCHEMA_VERSION and self._allow_destructive_reset_on_mismatch():
                await self._reset_schema(db)
            else:
                await self._create_schema(db)
                await self._migrate_schema(db, version)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def close(self) -> None:
        # Connections are opened per operation.
        return None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("conversation_messages", "server_contexts", "channel_contexts", "user_profiles"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        return {str(row[1]) for row in rows}

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            await self._migrate_v2_server_channel_lists(db)
        # Idempotent, heals partially migrated files.
        await self._migrate_v2_server_channel_lists(db)

    async def _migrate_v2_server_channel_lists(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(db, "server_contexts", "listening_channels TEXT NOT NULL DEFAULT '[]'")
        await self._add_column_if_missing(db, "server_contexts", "ignoring_channels TEXT NOT NULL DEFAULT '[]'")
        await self._add_column_if_missing(db, "server_contexts", "command_prefix TEXT NOT NULL DEFAULT '!'")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                display_name TEXT,
                interests TEXT NOT NULL DEFAULT '[]',
                personality TEXT NOT NULL DEFAULT '[]',
                recent_topics TEXT NOT NULL DEFAULT '[]',
                interaction_count INTEGER NOT NULL DEFAULT 0 CHECK (interaction_count >= 0),
                last_seen INTEGER NOT NULL,
                preferred_response_style TEXT,
                timezone TEXT,
                language TEXT,
                bio TEXT,
                goals TEXT,
                preferences TEXT,
                notes TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS channel_contexts (
                channel_id TEXT PRIMARY KEY,
                channel_name TEXT NOT NULL,
                channel_type TEXT NOT NULL DEFAULT 'text',
                recent_topics TEXT NOT NULL DEFAULT '[]',
                active_users TEXT NOT NULL DEFAULT '[]',
                conversation_tone TEXT NOT NULL DEFAULT 'casual'
                    CHECK (conversation_tone IN ('casual', 'serious', 'technical', 'fun')),
                last_activity INTEGER NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS server_contexts (
                server_id TEXT PRIMARY KEY,
                server_name TEXT NOT NULL,
                owner_id TEXT,
                member_count INTEGER NOT NULL DEFAULT 0,
                recent_events TEXT NOT NULL DEFAULT '[]',
                listening_channels TEXT NOT NULL DEFAULT '[]',
                ignoring_channels TEXT NOT NULL DEFAULT '[]',
                command_prefix TEXT NOT NULL DEFAULT '!',
                last_activity INTEGER NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS conversation_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                user_id TEXT,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                author TEXT,
                relevance_score REAL NOT NULL DEFAULT 0,
                CHECK ((role = 'assistant') = (user_id IS NULL))
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_channel_recent
            ON conversation_messages(channel_id, timestamp DESC, id DESC);

            CREATE INDEX IF NOT EXISTS idx_conversation_timestamp
            ON conversation_messages(timestamp);

            CREATE INDEX IF NOT EXISTS idx_conversation_user
            ON conversation_messages(user_id);

            CREATE INDEX IF NOT EXISTS idx_user_profiles_last_seen
            ON user_profiles(last_seen);

            CREATE INDEX IF NOT EXISTS idx_channel_contexts_last_activity
            ON channel_contexts(last_activity);
            """
        )

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")
