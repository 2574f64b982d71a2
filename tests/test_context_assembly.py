from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_bot.context.assembler import ContextAssembler, KeyedLocks  # noqa: E402
from companion_bot.context.listening import (  # noqa: E402
    ListeningModeRegistry,
    validate_listening_mode,
)
from companion_bot.context.models import (  # noqa: E402
    ConversationMessage,
    MessageAuthor,
    MessageChannel,
    MessageGuild,
    ProcessedMessage,
)
from companion_bot.errors import ContextStoreError, ListeningModeError  # noqa: E402
from companion_bot.memory.inmemory import InMemoryContextStore  # noqa: E402

NOW = 1_700_000_000_000


def _message(
    content: str,
    *,
    message_id: str = "m1",
    user_id: str = "u1",
    username: str = "linh",
    message_type: str = "regular",
    is_reply: bool = False,
    guild: bool = True,
    timestamp: int = NOW,
) -> ProcessedMessage:
    return ProcessedMessage(
        id=message_id,
        content=content,
        clean_content=content,
        author=MessageAuthor(id=user_id, username=username),
        channel=MessageChannel(id="c1", name="general"),
        guild=MessageGuild(id="g1", name="Guild") if guild else None,
        timestamp=timestamp,
        message_type=message_type,  # type: ignore[arg-type]
        is_reply=is_reply,
    )


def test_validate_listening_mode_rejects_unknown_mode_and_bad_threshold() -> None:
    assert validate_listening_mode("SMART-LISTENING", 0.4).threshold == 0.4
    assert validate_listening_mode("always-listen").threshold is None

    with pytest.raises(ListeningModeError):
        validate_listening_mode("sometimes")
    with pytest.raises(ListeningModeError):
        validate_listening_mode("smart-listening", 1.5)
    with pytest.raises(ListeningModeError):
        validate_listening_mode("always-listen", 0.5)
    with pytest.raises(ValueError):
        validate_listening_mode("smart-listening", "high")  # type: ignore[arg-type]


def test_registry_set_mode_reports_previous_and_keeps_state_on_error() -> None:
    registry = ListeningModeRegistry()

    change = registry.set_mode("c1", "always-listen")
    assert change.ok
    assert change.previous.mode == "smart-listening"
    assert registry.get_mode("c1").mode == "always-listen"

    failed = registry.set_mode("c1", "nonsense")
    assert not failed.ok
    assert "nonsense" in failed.error
    assert registry.get_mode("c1").mode == "always-listen"
    assert registry.get_mode("other").mode == "smart-listening"

    registry.set_mode("c2", "smart-listening", 0.3)
    assert registry.threshold_for("c2") == 0.3
    assert registry.threshold_for("other") == 0.6
    registry.reset("c2")
    assert "c2" not in registry.snapshot()


def test_registry_eligibility_per_mode() -> None:
    registry = ListeningModeRegistry()
    plain = _message("hello there")
    mention = _message("hello there", message_type="mention")
    command = _message("!stats", message_type="command")

    assert registry.eligibility("c1", plain) == "needs-scoring"
    assert registry.eligibility("c1", command) == "never"

    registry.set_mode("c1", "always-listen")
    assert registry.eligibility("c1", plain) == "eligible"

    for mode in ("mentions-only", "disabled"):
        registry.set_mode("c1", mode)
        assert registry.eligibility("c1", plain) == "never"
        assert registry.eligibility("c1", mention) == "eligible"
        assert registry.is_eligible("c1", _message("reply", is_reply=True))


def test_build_creates_entities_and_records_user_turn() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        result = await assembler.build(_message("hello, can you help me with javascript?"))

        assert result.ok
        context = result.context
        assert context is not None
        assert context.user_profile.interaction_count == 1
        assert "tech:javascript" in context.user_profile.recent_topics
        assert "tech:javascript" in context.channel_context.recent_topics
        assert context.channel_context.active_users == ["u1"]
        assert context.server_context is not None
        assert context.server_context.recent_events == ["message:linh"]
        assert context.conversation_history == ()
        assert abs(context.relevance_score - 0.8) < 1e-9
        assert "first-interaction" in context.contextual_cues

        rows = await store.get_conversation_history("c1", 10)
        assert len(rows) == 1
        assert rows[0].role == "user"
        assert rows[0].user_id == "u1"
        assert rows[0].relevance_score == context.relevance_score
        assert result.message_id == rows[0].id

    asyncio.run(_run())


def test_history_is_chronological_and_excludes_current_message() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        for offset, text in enumerate(["first", "second", "third"]):
            await store.add_conversation_message(
                ConversationMessage(
                    channel_id="c1",
                    user_id="u2",
                    role="user",
                    content=text,
                    timestamp=NOW - 10_000 + offset,
                    author="minh",
                )
            )
        assembler = ContextAssembler(store, history_limit=2, clock=lambda: NOW)

        result = await assembler.build(_message("fourth"))

        assert result.context is not None
        assert [entry.content for entry in result.context.conversation_history] == ["second", "third"]
        assert "first-interaction" not in result.context.contextual_cues

    asyncio.run(_run())


def test_concurrent_builds_count_every_interaction() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        results = await asyncio.gather(
            *(assembler.build(_message(f"message number {index}", message_id=f"m{index}")) for index in range(10))
        )

        assert all(result.ok for result in results)
        profile = await store.get_user_profile("u1")
        assert profile is not None
        assert profile.interaction_count == 10
        counts = sorted(result.context.user_profile.interaction_count for result in results if result.context)
        assert counts == list(range(1, 11))
        assert len(await store.get_conversation_history("c1", 50)) == 10

    asyncio.run(_run())


def test_snapshot_is_isolated_from_later_store_changes() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)
        first = await assembler.build(_message("python question?"))
        await assembler.build(_message("minecraft now", message_id="m2"))

        assert first.context is not None
        assert first.context.user_profile.interaction_count == 1
        assert "gaming:minecraft" not in first.context.user_profile.recent_topics

    asyncio.run(_run())


def test_direct_message_has_no_server_context() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        result = await assembler.build(_message("hi there in private", guild=False))

        assert result.context is not None
        assert result.context.server_context is None
        assert store.servers == {}

    asyncio.run(_run())


def test_store_failure_yields_error_instead_of_context() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        await store.close()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        result = await assembler.build(_message("anyone there?"))

        assert not result.ok
        assert result.context is None
        assert isinstance(result.error, ContextStoreError)

    asyncio.run(_run())


def test_record_assistant_turn_has_no_user_and_zero_relevance() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        await assembler.record_assistant_turn("c1", "Happy to help!")

        rows = await store.get_conversation_history("c1", 5)
        assert rows[0].role == "assistant"
        assert rows[0].user_id is None
        assert rows[0].author == "Bot"
        assert rows[0].relevance_score == 0.0
        assert rows[0].timestamp == NOW

    asyncio.run(_run())


def test_conversation_message_enforces_role_and_user_pairing() -> None:
    with pytest.raises(ValueError):
        ConversationMessage(channel_id="c1", user_id=None, role="user", content="x", timestamp=NOW)
    with pytest.raises(ValueError):
        ConversationMessage(channel_id="c1", user_id="u1", role="assistant", content="x", timestamp=NOW)
    with pytest.raises(ValueError):
        ConversationMessage(channel_id="c1", user_id="u1", role="system", content="x", timestamp=NOW)  # type: ignore[arg-type]


def test_keyed_locks_serialise_overlapping_keys() -> None:
    async def _run() -> None:
        locks = KeyedLocks()
        order: list[str] = []
        sizes: list[int] = []

        async def _worker(name: str, *keys: str) -> None:
            async with locks.hold(*keys):
                order.append(f"{name}:start")
                sizes.append(len(locks))
                await asyncio.sleep(0)
                order.append(f"{name}:end")

        await asyncio.gather(_worker("a", "user:1", "channel:1"), _worker("b", "channel:1", "user:1"))

        assert order in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )
        assert sizes == [2, 2]
        assert len(locks) == 0

    asyncio.run(_run())


def test_keyed_locks_forget_keys_after_cancelled_waiter() -> None:
    async def _run() -> None:
        locks = KeyedLocks()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def _holder() -> None:
            async with locks.hold("server:1"):
                entered.set()
                await release.wait()

        holder = asyncio.create_task(_holder())
        await entered.wait()
        waiter = asyncio.create_task(_noop_hold(locks, "server:1", "user:9"))
        await asyncio.sleep(0)
        assert len(locks) == 1

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        release.set()
        await holder

        assert len(locks) == 0

    asyncio.run(_run())


async def _noop_hold(locks: KeyedLocks, *keys: str) -> None:
    async with locks.hold(*keys):
        return None


def test_server_context_carries_owner_and_member_count() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)
        first = _message("hello everyone")
        first.guild = MessageGuild(id="g1", name="Guild", owner_id="42", member_count=10)

        result = await assembler.build(first)

        assert result.context is not None
        assert result.context.server_context is not None
        assert result.context.server_context.owner_id == "42"
        assert result.context.server_context.member_count == 10

        second = _message("hello again", message_id="m2", timestamp=NOW + 1)
        second.guild = MessageGuild(id="g1", name="Guild", member_count=11)
        await assembler.build(second)
        server = await store.get_server_context("g1")
        assert server is not None
        assert (server.owner_id, server.member_count) == ("42", 11)
        assert len(assembler.locks) == 0

    asyncio.run(_run())


def test_sync_server_creates_then_refreshes_metadata() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        assembler = ContextAssembler(store, clock=lambda: NOW)

        created = await assembler.sync_server(MessageGuild(id="g9", name="New", owner_id="1", member_count=3))
        assert (created.server_name, created.owner_id, created.member_count) == ("New", "1", 3)

        await store.add_server_recent_event("g9", "message:linh")
        updated = await assembler.sync_server(MessageGuild(id="g9", name="Renamed", owner_id="2", member_count=4))

        assert (updated.server_name, updated.owner_id, updated.member_count) == ("Renamed", "2", 4)
        assert updated.recent_events == ["message:linh"]
        assert (await store.get_server_context("g9")).member_count == 4  # type: ignore[union-attr]

    asyncio.run(_run())
