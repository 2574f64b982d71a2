from __future__ import annotations

import asyncio
import json
import random
import sys
from pathlib import Path
from typing import Dict, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_bot.context.assembler import ContextAssembler  # noqa: E402
from companion_bot.context.listening import ListeningModeRegistry  # noqa: E402
from companion_bot.context.models import (  # noqa: E402
    ChannelContext,
    HistoryEntry,
    MessageAuthor,
    MessageChannel,
    MessageContext,
    MessageGuild,
    ProcessedMessage,
    UserProfile,
)
from companion_bot.errors import ProviderError, ProviderTimeoutError  # noqa: E402
from companion_bot.memory.inmemory import InMemoryContextStore  # noqa: E402
from companion_bot.orchestrator import FALLBACK_RESPONSES, CompletionOrchestrator  # noqa: E402
from companion_bot.prompts.json_loader import load_prompt_json  # noqa: E402
from companion_bot.prompts.system import build_system_prompt, build_turns, build_user_context  # noqa: E402
from companion_bot.services.completion import CompletionResult, CompletionUsage, backoff_delay  # noqa: E402

NOW = 1_700_000_000_000


class _FakeProvider:
    model = "fake-model"

    def __init__(self, *, text: str = "Sure, happy to help!", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[dict[str, object]] = []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def complete(self, system_prompt: str, turns: List[Dict[str, str]]) -> CompletionResult:
        self.calls.append({"system_prompt": system_prompt, "turns": turns})
        if self.error is not None:
            raise self.error
        return CompletionResult(
            text=self.text,
            model=self.model,
            finish_reason="stop",
            usage=CompletionUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            latency_ms=12,
        )

    async def test_connection(self) -> bool:
        return self.error is None

    def model_info(self) -> Dict[str, object]:
        return {"provider": "fake", "model": self.model}


def _message(
    content: str,
    *,
    message_type: str = "regular",
    is_reply: bool = False,
    message_id: str = "m1",
) -> ProcessedMessage:
    return ProcessedMessage(
        id=message_id,
        content=content,
        clean_content=content,
        author=MessageAuthor(id="u1", username="linh"),
        channel=MessageChannel(id="c1", name="general"),
        guild=MessageGuild(id="g1", name="Guild"),
        timestamp=NOW,
        message_type=message_type,  # type: ignore[arg-type]
        is_reply=is_reply,
    )


def _orchestrator(provider: _FakeProvider, store: InMemoryContextStore | None = None) -> CompletionOrchestrator:
    store = store or InMemoryContextStore()
    assembler = ContextAssembler(store, clock=lambda: NOW)
    return CompletionOrchestrator(assembler, ListeningModeRegistry(), provider, rng=random.Random(1))


def _roles(store: InMemoryContextStore) -> list[str]:
    return [row.role for row in store.messages]


def test_relevant_message_gets_reply_and_assistant_turn_is_persisted() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        provider = _FakeProvider()
        orchestrator = _orchestrator(provider, store)

        outcome = await orchestrator.handle(_message("hello, can you help me with javascript?"))

        assert outcome.kind == "replied"
        assert outcome.should_send
        assert outcome.text == "Sure, happy to help!"
        assert outcome.usage is not None and outcome.usage.total_tokens == 15
        assert _roles(store) == ["user", "assistant"]
        assert store.messages[1].content == "Sure, happy to help!"
        turns = provider.calls[0]["turns"]
        assert turns == [{"role": "user", "content": "linh: hello, can you help me with javascript?"}]
        assert orchestrator.counters["replied"] == 1

    asyncio.run(_run())


def test_provider_timeout_returns_fallback_without_persisting_reply() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        orchestrator = _orchestrator(_FakeProvider(error=ProviderTimeoutError("timed out")), store)

        outcome = await orchestrator.handle(_message("@bot are you there?", message_type="mention"))

        assert outcome.kind == "fallback"
        assert outcome.text in FALLBACK_RESPONSES
        assert isinstance(outcome.error, ProviderTimeoutError)
        assert _roles(store) == ["user"]

    asyncio.run(_run())


def test_provider_error_and_empty_text_both_fall_back() -> None:
    async def _run() -> None:
        failing = _orchestrator(_FakeProvider(error=ProviderError("500")))
        empty = _orchestrator(_FakeProvider(text="   "))

        first = await failing.handle(_message("what do you think?", is_reply=True))
        second = await empty.handle(_message("what do you think?", is_reply=True))

        assert first.kind == "fallback"
        assert second.kind == "fallback"
        assert second.should_send

    asyncio.run(_run())


def test_low_relevance_message_is_recorded_but_skipped() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        provider = _FakeProvider()
        orchestrator = _orchestrator(provider, store)

        outcome = await orchestrator.handle(_message("ok"))

        assert outcome.kind == "skipped"
        assert outcome.reason == "low relevance"
        assert not outcome.should_send
        assert provider.calls == []
        assert _roles(store) == ["user"]

    asyncio.run(_run())


def test_disabled_channel_skips_without_touching_store() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        orchestrator = _orchestrator(_FakeProvider(), store)
        orchestrator.registry.set_mode("c1", "disabled")

        outcome = await orchestrator.handle(_message("is anyone around to chat about anime?"))
        mention = await orchestrator.handle(_message("@bot hi", message_type="mention", message_id="m2"))

        assert outcome.kind == "skipped"
        assert outcome.reason == "listening mode disabled"
        assert mention.kind == "replied"
        assert len(store.messages) == 2

    asyncio.run(_run())


def test_commands_are_never_answered() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        orchestrator = _orchestrator(_FakeProvider(), store)

        outcome = await orchestrator.handle(_message("!stats", message_type="command"))

        assert outcome.kind == "skipped"
        assert outcome.reason == "command"
        assert store.messages == []

    asyncio.run(_run())


def test_always_listen_replies_to_short_messages() -> None:
    async def _run() -> None:
        orchestrator = _orchestrator(_FakeProvider())
        orchestrator.registry.set_mode("c1", "always-listen")

        outcome = await orchestrator.handle(_message("ok"))

        assert outcome.kind == "replied"

    asyncio.run(_run())


def test_store_outage_produces_failed_outcome() -> None:
    async def _run() -> None:
        store = InMemoryContextStore()
        await store.close()
        provider = _FakeProvider()
        orchestrator = _orchestrator(provider, store)

        outcome = await orchestrator.handle(_message("@bot help?", message_type="mention"))

        assert outcome.kind == "failed"
        assert not outcome.should_send
        assert provider.calls == []
        assert orchestrator.stats()["failed"] == 1

    asyncio.run(_run())


def _context(history: tuple[HistoryEntry, ...] = (), interaction_count: int = 1) -> MessageContext:
    return MessageContext(
        message=_message("what games do you like?"),
        user_profile=UserProfile(
            user_id="u1",
            username="linh",
            interaction_count=interaction_count,
            personality=["inquisitive"],
            recent_topics=["gaming:game"],
        ),
        channel_context=ChannelContext(channel_id="c1", channel_name="general"),
        server_context=None,
        conversation_history=history,
        relevance_score=0.7,
        contextual_cues=("evening", "needs-help"),
    )


def test_build_turns_keeps_window_and_labels_speakers() -> None:
    history = tuple(
        HistoryEntry(role="user", content=f"line {index}", timestamp=index, author="minh") for index in range(12)
    ) + (HistoryEntry(role="assistant", content="bot line", timestamp=99, author="Bot"),)

    turns = build_turns(_context(history), window=3)

    assert turns == [
        {"role": "user", "content": "minh: line 10"},
        {"role": "user", "content": "minh: line 11"},
        {"role": "assistant", "content": "bot line"},
        {"role": "user", "content": "linh: what games do you like?"},
    ]


def test_system_prompt_distinguishes_newcomers_from_known_users() -> None:
    newcomer = build_system_prompt(_context(), language="Vietnamese")
    known = build_system_prompt(_context(interaction_count=6))

    assert "first interaction with linh" in newcomer
    assert "Answer in Vietnamese" in newcomer
    assert "- Server: Guild" in newcomer
    assert build_user_context(_context()) == ""
    assert "Interactions: 6" in known
    assert "Context: evening, needs-help" in known


def test_prompt_json_overrides_defaults_and_survives_bad_files(tmp_path: Path) -> None:
    defaults = {"greeting": "hi", "nested": {"a": 1, "b": 2}}
    (tmp_path / "prompts.json").write_text(json.dumps({"nested": {"b": 3}}), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    merged = load_prompt_json("prompts.json", defaults, directory=tmp_path)
    broken = load_prompt_json("broken.json", defaults, directory=tmp_path)
    missing = load_prompt_json("missing.json", defaults, directory=tmp_path)

    assert merged == {"greeting": "hi", "nested": {"a": 1, "b": 3}}
    assert broken == defaults
    assert missing == defaults
    merged["greeting"] = "changed"
    assert load_prompt_json("prompts.json", defaults, directory=tmp_path)["greeting"] == "hi"


def test_backoff_delay_is_capped() -> None:
    assert backoff_delay(1, 0.0) == 0.35
    assert backoff_delay(50, 1.0) == 4.0
