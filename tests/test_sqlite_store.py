from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_bot.context.assembler import ContextAssembler  # noqa: E402
from companion_bot.context.models import (  # noqa: E402
    ChannelContext,
    ConversationMessage,
    MessageAuthor,
    MessageChannel,
    MessageGuild,
    ProcessedMessage,
    ServerContext,
    UserProfile,
    now_ms,
)
from companion_bot.errors import ContextStoreError  # noqa: E402
from companion_bot.memory.base import DAY_MS  # noqa: E402
from companion_bot.memory.store import MemoryStore  # noqa: E402


def _user_turn(channel_id: str, content: str, timestamp: int, user_id: str = "u1") -> ConversationMessage:
    return ConversationMessage(
        channel_id=channel_id,
        user_id=user_id,
        role="user",
        content=content,
        timestamp=timestamp,
        author="linh",
        relevance_score=0.5,
    )


def test_profile_channel_and_server_round_trip(tmp_path: Path) -> None:
    async def _run() -> None:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()

        created = await store.create_user_profile(
            UserProfile(user_id="u1", username="linh", interests=["anime"], last_seen=1000)
        )
        again = await store.create_user_profile(UserProfile(user_id="u1", username="other", last_seen=2000))
        assert created.username == "linh"
        assert again.username == "linh"

        created.interaction_count = 4
        created.recent_topics = ["tech:python", "gaming:lol"]
        await store.update_user_profile(created)
        loaded = await store.get_user_profile("u1")
        assert loaded is not None
        assert loaded.interaction_count == 4
        assert loaded.recent_topics == ["tech:python", "gaming:lol"]
        assert loaded.interests == ["anime"]

        await store.create_channel_context(ChannelContext(channel_id="c1", channel_name="general", last_activity=5))
        channel = await store.get_channel_context("c1")
        assert channel is not None
        assert channel.conversation_tone == "casual"

        await store.create_server_context(ServerContext(server_id="g1", server_name="Guild", last_activity=5))
        for index in range(12):
            events = await store.add_server_recent_event("g1", f"event-{index}", cap=10)
        assert events[0] == "event-11"
        assert len(events) == 10
        server = await store.get_server_context("g1")
        assert server is not None
        assert server.recent_events == events
        assert server.command_prefix == "!"

        assert await store.get_user_profile("missing") is None

    asyncio.run(_run())


def test_interaction_count_never_moves_backwards(tmp_path: Path) -> None:
    async def _run() -> None:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        profile = await store.create_user_profile(UserProfile(user_id="u1", username="linh", last_seen=1))
        profile.interaction_count = 5
        await store.update_user_profile(profile)
        profile.interaction_count = 3
        await store.update_user_profile(profile)

        loaded = await store.get_user_profile("u1")
        assert loaded is not None
        assert loaded.interaction_count == 5

    asyncio.run(_run())


def test_conversation_history_is_newest_first_and_limited(tmp_path: Path) -> None:
    async def _run() -> None:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        for index in range(5):
            await store.add_conversation_message(_user_turn("c1", f"msg {index}", 1000 + index))
        await store.add_conversation_message(_user_turn("c2", "elsewhere", 5000))
        await store.add_conversation_message(
            ConversationMessage(
                channel_id="c1",
                user_id=None,
                role="assistant",
                content="reply",
                timestamp=2000,
                author="Bot",
            )
        )

        rows = await store.get_conversation_history("c1", 3)
        assert [row.content for row in rows] == ["reply", "msg 4", "msg 3"]
        assert rows[0].user_id is None
        assert await store.get_conversation_history("c1", 0) == []

        stats = await store.get_database_stats()
        assert stats["messages"] == 7
        assert stats["assistant_messages"] == 1

    asyncio.run(_run())


def test_cleanup_old_data_removes_stale_rows(tmp_path: Path) -> None:
    async def _run() -> None:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        old = now_ms() - 40 * DAY_MS
        fresh = now_ms()
        await store.add_conversation_message(_user_turn("c1", "ancient", old))
        await store.add_conversation_message(_user_turn("c1", "recent", fresh))
        await store.create_user_profile(UserProfile(user_id="u-old", username="gone", last_seen=old))
        await store.create_user_profile(UserProfile(user_id="u-new", username="here", last_seen=fresh))
        await store.create_channel_context(ChannelContext(channel_id="c-old", channel_name="old", last_activity=old))

        removed = await store.cleanup_old_data(30)

        assert removed == {"messages": 1, "users": 1, "channels": 1}
        assert await store.get_user_profile("u-old") is None
        assert await store.get_user_profile("u-new") is not None
        assert [row.content for row in await store.get_conversation_history("c1", 10)] == ["recent"]

    asyncio.run(_run())


def test_assembler_over_sqlite_records_turn_and_updates_entities(tmp_path: Path) -> None:
    async def _run() -> None:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        assembler = ContextAssembler(store)
        message = ProcessedMessage(
            id="m1",
            content="anyone playing minecraft tonight?",
            clean_content="anyone playing minecraft tonight?",
            author=MessageAuthor(id="u1", username="linh"),
            channel=MessageChannel(id="c1", name="general"),
            guild=MessageGuild(id="g1", name="Guild"),
            timestamp=now_ms(),
        )

        first = await assembler.build(message)
        second = await assembler.build(message)

        assert first.context is not None and second.context is not None
        assert second.context.user_profile.interaction_count == 2
        assert [entry.content for entry in second.context.conversation_history] == [message.clean_content]
        assert "gaming:minecraft" in second.context.channel_context.recent_topics
        server = await store.get_server_context("g1")
        assert server is not None
        assert server.recent_events == ["message:linh", "message:linh"]

    asyncio.run(_run())


def test_newer_schema_version_is_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "memory.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE legacy (x INTEGER)")
    conn.execute("PRAGMA user_version = 99")
    conn.commit()
    conn.close()

    store = MemoryStore(db_path)
    with pytest.raises(ContextStoreError):
        asyncio.run(store.init())

    monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(store.init())
    conn = sqlite3.connect(db_path)
    try:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    finally:
        conn.close()
    assert version == MemoryStore.SCHEMA_VERSION


def test_v1_database_gains_server_channel_list_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    conn = sqlite3.connect(db_path)
    conn.execute(
        """
        CREATE TABLE server_contexts (
            server_id TEXT PRIMARY KEY,
            server_name TEXT NOT NULL,
            owner_id TEXT,
            member_count INTEGER NOT NULL DEFAULT 0,
            recent_events TEXT NOT NULL DEFAULT '[]',
            last_activity INTEGER NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute("INSERT INTO server_contexts (server_id, server_name, last_activity) VALUES ('g1', 'Guild', 1)")
    conn.execute("PRAGMA user_version = 1")
    conn.commit()
    conn.close()

    async def _run() -> None:
        store = MemoryStore(db_path)
        await store.init()
        server = await store.get_server_context("g1")
        assert server is not None
        assert server.listening_channels == []
        assert server.ignoring_channels == []
        assert server.command_prefix == "!"

    asyncio.run(_run())
