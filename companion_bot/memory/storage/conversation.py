from __future__ import annotations

from typing import Dict, List

from ...context.models import ConversationMessage, now_ms
from ..base import DAY_MS
from .utils import _row_to_conversation_message, _sqlite_memory_connection


class MemoryConversationMixin:
    async def add_conversation_message(self, message: ConversationMessage) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO conversation_messages (
                    channel_id, user_id, role, content, timestamp, author, relevance_score
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.channel_id,
                    message.user_id,
                    message.role,
                    message.content,
                    int(message.timestamp),
                    message.author,
                    float(message.relevance_score),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_conversation_history(self, channel_id: str, limit: int = 50) -> List[ConversationMessage]:
        if limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, channel_id, user_id, role, content, timestamp, author, relevance_score
                FROM conversation_messages
                WHERE channel_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (str(channel_id), int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_conversation_message(row) for row in rows]

    async def delete_old_conversation_history(self, older_than_days: int) -> int:
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM conversation_messages WHERE timestamp < ?", (cutoff,))
            await db.commit()
            return max(0, int(cursor.rowcount))

    async def cleanup_old_data(self, older_than_days: int = 30) -> Dict[str, int]:
        cutoff = now_ms() - int(older_than_days) * DAY_MS
        async with _sqlite_memory_connection(self.db_path) as db:
            messages = await db.execute("DELETE FROM conversation_messages WHERE timestamp < ?", (cutoff,))
            users = await db.execute("DELETE FROM user_profiles WHERE last_seen < ?", (cutoff,))
            channels = await db.execute("DELETE FROM channel_contexts WHERE last_activity < ?", (cutoff,))
            await db.commit()
            return {
                "messages": max(0, int(messages.rowcount)),
                "users": max(0, int(users.rowcount)),
                "channels": max(0, int(channels.rowcount)),
            }
