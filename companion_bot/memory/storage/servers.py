from __future__ import annotations

from typing import List, Optional

from ...context.models import SERVER_RECENT_EVENTS_CAP, ServerContext, push_front_bounded
from ...errors import ContextStoreError
from .utils import _dump_list, _load_list, _row_to_server_context, _sqlite_memory_connection

_SERVER_COLUMNS = """
    server_id, server_name, owner_id, member_count, recent_events,
    listening_channels, ignoring_channels, command_prefix, last_activity
"""


def _server_params(context: ServerContext) -> tuple:
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


class MemoryServersMixin:
    async def get_server_context(self, server_id: str) -> Optional[ServerContext]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_SERVER_COLUMNS} FROM server_contexts WHERE server_id = ?",
                (str(server_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_server_context(row) if row is not None else None

    async def create_server_context(self, context: ServerContext) -> ServerContext:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO server_contexts ({_SERVER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(server_id) DO NOTHING
                """,
                _server_params(context),
            )
            await db.commit()
            async with db.execute(
                f"SELECT {_SERVER_COLUMNS} FROM server_contexts WHERE server_id = ?",
                (context.server_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise ContextStoreError(f"Server context {context.server_id} vanished after insert")
        return _row_to_server_context(row)

    async def update_server_context(self, context: ServerContext) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO server_contexts ({_SERVER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(server_id) DO UPDATE SET
                    server_name = excluded.server_name,
                    owner_id = excluded.owner_id,
                    member_count = excluded.member_count,
                    recent_events = excluded.recent_events,
                    listening_channels = excluded.listening_channels,
                    ignoring_channels = excluded.ignoring_channels,
                    command_prefix = excluded.command_prefix,
                    last_activity = excluded.last_activity,
                    updated_at = CURRENT_TIMESTAMP
                """,
                _server_params(context),
            )
            await db.commit()

    async def delete_server_context(self, server_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM server_contexts WHERE server_id = ?", (str(server_id),))
            await db.commit()
            return cursor.rowcount > 0

    async def list_server_contexts(self, limit: int = 100) -> List[ServerContext]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_SERVER_COLUMNS} FROM server_contexts ORDER BY last_activity DESC LIMIT ?",
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_server_context(row) for row in rows]

    async def add_server_recent_event(
        self,
        server_id: str,
        event: str,
        *,
        cap: int = SERVER_RECENT_EVENTS_CAP,
    ) -> List[str]:
        """Push `event` to the front of the server's event ring; returns the trimmed ring."""
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                "SELECT recent_events FROM server_contexts WHERE server_id = ?",
                (str(server_id),),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                raise ContextStoreError(f"Unknown server context {server_id}")
            events = push_front_bounded(_load_list(row["recent_events"]), event, cap)
            await db.execute(
                """
                UPDATE server_contexts
                SET recent_events = ?, updated_at = CURRENT_TIMESTAMP
                WHERE server_id = ?
                """,
                (_dump_list(events), str(server_id)),
            )
            await db.commit()
        return events
