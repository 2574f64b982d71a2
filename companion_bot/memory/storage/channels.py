from __future__ import annotations

from typing import List, Optional

from ...context.models import ChannelContext
from ...errors import ContextStoreError
from .utils import _dump_list, _row_to_channel_context, _sqlite_memory_connection

_CHANNEL_COLUMNS = """
    channel_id, channel_name, channel_type, recent_topics, active_users,
    conversation_tone, last_activity
"""


def _channel_params(context: ChannelContext) -> tuple:
    return (
        context.channel_id,
        context.channel_name,
        context.channel_type,
        _dump_list(context.recent_topics),
        _dump_list(context.active_users),
        context.conversation_tone,
        int(context.last_activity),
    )


class MemoryChannelsMixin:
    async def get_channel_context(self, channel_id: str) -> Optional[ChannelContext]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts WHERE channel_id = ?",
                (str(channel_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_channel_context(row) if row is not None else None

    async def create_channel_context(self, context: ChannelContext) -> ChannelContext:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO channel_contexts ({_CHANNEL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO NOTHING
                """,
                _channel_params(context),
            )
            await db.commit()
            async with db.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts WHERE channel_id = ?",
                (context.channel_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise ContextStoreError(f"Channel context {context.channel_id} vanished after insert")
        return _row_to_channel_context(row)

    async def update_channel_context(self, context: ChannelContext) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO channel_contexts ({_CHANNEL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    channel_name = excluded.channel_name,
                    channel_type = excluded.channel_type,
                    recent_topics = excluded.recent_topics,
                    active_users = excluded.active_users,
                    conversation_tone = excluded.conversation_tone,
                    last_activity = excluded.last_activity,
                    updated_at = CURRENT_TIMESTAMP
                """,
                _channel_params(context),
            )
            await db.commit()

    async def delete_channel_context(self, channel_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM channel_contexts WHERE channel_id = ?", (str(channel_id),))
            await db.commit()
            return cursor.rowcount > 0

    async def list_channel_contexts(self, limit: int = 100) -> List[ChannelContext]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channel_contexts ORDER BY last_activity DESC LIMIT ?",
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_channel_context(row) for row in rows]
