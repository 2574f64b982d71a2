from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from ...context.models import ChannelContext, ConversationMessage, ServerContext, UserProfile
from ...errors import ContextStoreError


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with foreign keys and busy timeout set.

    Driver and filesystem errors surface as `ContextStoreError`.
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            timeout_ms = _sqlite_busy_timeout_ms()
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            yield db
    except (aiosqlite.Error, OSError) as exc:
        raise ContextStoreError(f"SQLite memory store error: {exc}") from exc


def _dump_list(values: Iterable[str]) -> str:
    return json.dumps([str(value) for value in values], ensure_ascii=False)


def _load_list(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        return [str(value) for value in raw]
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ContextStoreError(f"Corrupt list column value: {raw!r}") from exc
    if not isinstance(data, list):
        raise ContextStoreError(f"Expected a JSON list, got {type(data).__name__}")
    return [str(value) for value in data]


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _row_to_user_profile(row: Any) -> UserProfile:
    return UserProfile(
        user_id=str(row["user_id"]),
        username=str(row["username"]),
        display_name=_opt_str(row["display_name"]),
        interests=_load_list(row["interests"]),
        personality=_load_list(row["personality"]),
        recent_topics=_load_list(row["recent_topics"]),
        interaction_count=int(row["interaction_count"]),
        last_seen=int(row["last_seen"]),
        preferred_response_style=_opt_str(row["preferred_response_style"]),
        timezone=_opt_str(row["timezone"]),
        language=_opt_str(row["language"]),
        bio=_opt_str(row["bio"]),
        goals=_opt_str(row["goals"]),
        preferences=_opt_str(row["preferences"]),
        notes=_opt_str(row["notes"]),
    )


def _row_to_channel_context(row: Any) -> ChannelContext:
    return ChannelContext(
        channel_id=str(row["channel_id"]),
        channel_name=str(row["channel_name"]),
        channel_type=str(row["channel_type"]),
        recent_topics=_load_list(row["recent_topics"]),
        active_users=_load_list(row["active_users"]),
        conversation_tone=str(row["conversation_tone"]),  # type: ignore[arg-type]
        last_activity=int(row["last_activity"]),
    )


def _row_to_server_context(row: Any) -> ServerContext:
    return ServerContext(
        server_id=str(row["server_id"]),
        server_name=str(row["server_name"]),
        owner_id=_opt_str(row["owner_id"]),
        member_count=int(row["member_count"]),
        recent_events=_load_list(row["recent_events"]),
        listening_channels=_load_list(row["listening_channels"]),
        ignoring_channels=_load_list(row["ignoring_channels"]),
        command_prefix=str(row["command_prefix"]),
        last_activity=int(row["last_activity"]),
    )


def _row_to_conversation_message(row: Any) -> ConversationMessage:
    return ConversationMessage(
        id=int(row["id"]),
        channel_id=str(row["channel_id"]),
        user_id=_opt_str(row["user_id"]),
        role=str(row["role"]),  # type: ignore[arg-type]
        content=str(row["content"]),
        timestamp=int(row["timestamp"]),
        author=_opt_str(row["author"]),
        relevance_score=float(row["relevance_score"]),
    )
