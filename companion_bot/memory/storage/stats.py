from __future__ import annotations

from typing import Any, Dict, Optional

from .utils import _load_list, _sqlite_memory_connection


class MemoryStatsMixin:
    async def _count(self, db: Any, sql: str, params: tuple = ()) -> int:
        async with db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row is not None and row[0] is not None else 0

    async def get_database_stats(self) -> Dict[str, int]:
        async with _sqlite_memory_connection(self.db_path) as db:
            return {
                "users": await self._count(db, "SELECT COUNT(*) FROM user_profiles"),
                "channels": await self._count(db, "SELECT COUNT(*) FROM channel_contexts"),
                "servers": await self._count(db, "SELECT COUNT(*) FROM server_contexts"),
                "messages": await self._count(db, "SELECT COUNT(*) FROM conversation_messages"),
                "user_messages": await self._count(
                    db, "SELECT COUNT(*) FROM conversation_messages WHERE role = 'user'"
                ),
                "assistant_messages": await self._count(
                    db, "SELECT COUNT(*) FROM conversation_messages WHERE role = 'assistant'"
                ),
            }

    async def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT interaction_count, last_seen FROM user_profiles WHERE user_id = ?",
                (str(user_id),),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            message_count = await self._count(
                db, "SELECT COUNT(*) FROM conversation_messages WHERE user_id = ?", (str(user_id),)
            )
        return {
            "interaction_count": int(row["interaction_count"]),
            "message_count": message_count,
            "last_seen": int(row["last_seen"]),
        }

    async def get_channel_stats(self, channel_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT active_users, last_activity FROM channel_contexts WHERE channel_id = ?",
                (str(channel_id),),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            message_count = await self._count(
                db, "SELECT COUNT(*) FROM conversation_messages WHERE channel_id = ?", (str(channel_id),)
            )
            assistant_count = await self._count(
                db,
                "SELECT COUNT(*) FROM conversation_messages WHERE channel_id = ? AND role = 'assistant'",
                (str(channel_id),),
            )
        return {
            "message_count": message_count,
            "assistant_messages": assistant_count,
            "active_users": len(_load_list(row["active_users"])),
            "last_activity": int(row["last_activity"]),
        }
