from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

import discord

from ..channels import ChannelGate
from ..config import Settings
from ..context.assembler import ContextAssembler, KeyedLocks
from ..context.listening import ListeningModeRegistry
from ..errors import ContextStoreError
from ..maintenance import RetentionSweeper
from ..memory.base import ContextStore
from ..orchestrator import CompletionOrchestrator, ReplyOutcome
from ..services.completion import CompletionProvider
from ..services.tts_client import SpeechSynthesizer
from ..speech.audio_files import AudioFileManager
from ..speech.pipeline import SpeechPipeline
from ..speech.playback import VoicePlaybackManager
from .commands import CommandMixin
from .common import chunk_text
from .message_processor import MessageProcessor, extract_command, guild_snapshot
from .voice import DiscordVoiceConnector

logger = logging.getLogger("companion_bot")

APOLOGY_TEXT = "I failed to answer right now."


class CompanionDiscordBot(CommandMixin, discord.Client):
    def __init__(
        self,
        settings: Settings,
        store: ContextStore,
        provider: CompletionProvider,
        synthesizer: Optional[SpeechSynthesizer],
        audio_files: AudioFileManager,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.members = settings.discord_members_intent
        intents.voice_states = True

        super().__init__(intents=intents)

        self.settings = settings
        self.store = store
        self.provider = provider
        self.synthesizer = synthesizer
        self.audio_files = audio_files

        self.locks = KeyedLocks()
        self.registry = ListeningModeRegistry(settings.default_listening_mode, settings.default_relevance_threshold)
        self.gate = ChannelGate(
            store,
            locks=self.locks,
            listen_channel_ids=settings.listen_channel_ids,
            ignored_channel_ids=settings.ignored_channel_ids,
            default_prefix=settings.command_prefix,
        )
        self.assembler = ContextAssembler(store, locks=self.locks, history_limit=settings.history_limit)
        self.orchestrator = CompletionOrchestrator(
            self.assembler,
            self.registry,
            provider,
            language=settings.preferred_response_language,
        )
        self.processor = MessageProcessor()
        self.playback = VoicePlaybackManager(
            DiscordVoiceConnector(self),
            default_channel_id=settings.voice_channel_id,
            connect_timeout=settings.voice_connect_timeout_seconds,
            playback_timeout=settings.voice_playback_timeout_seconds,
            max_pending=settings.voice_queue_size,
        )
        self.speech: Optional[SpeechPipeline] = None
        if settings.voice_enabled and synthesizer is not None:
            self.speech = SpeechPipeline(synthesizer, audio_files, self.playback)
        self.sweeper = RetentionSweeper(
            store,
            audio_files,
            retention_days=settings.retention_days,
            audio_retention_hours=settings.audio_retention_hours,
        )
        self.maintenance_task: asyncio.Task[None] | None = None

    async def setup_hook(self) -> None:
        await self.store.init()
        await self.provider.start()
        if self.synthesizer is not None:
            await self.synthesizer.start()
        self.audio_files.init()
        await self.gate.load()

        await self._probe("completion provider", self.provider.test_connection())
        if self.speech is not None and self.synthesizer is not None:
            await self._probe("speech synthesizer", self.synthesizer.test_connection())

        self.maintenance_task = asyncio.create_task(
            self.sweeper.run_forever(self.settings.maintenance_interval_seconds),
            name="retention-sweep",
        )

    async def _probe(self, label: str, coro: Any) -> None:
        try:
            ok = await asyncio.wait_for(coro, timeout=20.0)
        except asyncio.TimeoutError:
            logger.warning("Connection test timed out: %s", label)
            return
        except Exception as exc:
            logger.warning("Connection test failed: %s (%s)", label, exc)
            return
        if ok:
            logger.info("Connection test passed: %s", label)
        else:
            logger.warning("Connection test failed: %s", label)

    async def close(self) -> None:
        await self._cancel_task(self.maintenance_task)
        await self._run_shutdown_step("playback.shutdown", self.playback.shutdown(), timeout=6.0)
        if self.synthesizer is not None:
            await self._run_shutdown_step("synthesizer.close", self.synthesizer.close(), timeout=6.0)
        await self._run_shutdown_step("provider.close", self.provider.close(), timeout=6.0)
        await self._run_shutdown_step("store.close", self.store.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def on_ready(self) -> None:
        if self.user:
            self.processor.bot_user_id = self.user.id
            logger.info("Connected as %s (%s)", self.user, self.user.id)
        listen = self.gate.listen_channels()
        if listen:
            logger.info("Listening in %s configured channel(s)", len(listen))
        else:
            logger.info("Listening in all channels (no listen list configured)")

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info("Joined server %s (%s)", guild.name, guild.id)
        await self._sync_guild(guild)

    async def on_guild_update(self, before: discord.Guild, after: discord.Guild) -> None:
        await self._sync_guild(after)

    async def _sync_guild(self, guild: discord.Guild) -> None:
        try:
            await self.assembler.sync_server(guild_snapshot(guild))
        except ContextStoreError as exc:
            logger.error("Could not record server %s: %s", guild.id, exc)

    async def _send_chunks(
        self,
        channel: discord.abc.Messageable,
        text: str,
        reference: discord.Message | None = None,
    ) -> None:
        for index, chunk in enumerate(chunk_text(text, 1900)):
            kwargs: dict[str, Any] = {}
            if index == 0 and reference is not None:
                kwargs["reference"] = reference
            await channel.send(chunk, **kwargs)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return

        guild_id = str(message.guild.id) if message.guild else None
        prefix = self.gate.prefix_for(guild_id)
        processed = self.processor.process(message, command_prefix=prefix)

        if processed.message_type == "command":
            command = extract_command(message.content, prefix)
            if command is None:
                return
            try:
                await self._dispatch_command(message, command)
            except Exception as exc:
                logger.exception("Command %s failed: %s", command.name, exc)
                await message.reply("That command failed. Check bot logs.")
            return

        if not self.gate.should_listen(processed.channel.id):
            return
        self.processor.log_message(processed)

        try:
            async with message.channel.typing():
                outcome = await self.orchestrator.handle(processed)
            if outcome.should_send:
                assert outcome.text is not None
                await self._send_chunks(message.channel, outcome.text, reference=message)
        except Exception as exc:
            logger.exception("Text turn failed: %s", exc)
            await message.reply(APOLOGY_TEXT)
            return

        if outcome.kind == "failed":
            logger.warning("No reply for message %s: %s", processed.id, outcome.reason)
        await self._speak(message, outcome)

    async def _speak(self, message: discord.Message, outcome: ReplyOutcome) -> None:
        if self.speech is None or message.guild is None or not outcome.should_send:
            return
        guild_id = str(message.guild.id)
        if not self.playback.is_connected(guild_id) and self.settings.voice_channel_id is None:
            return
        assert outcome.text is not None
        try:
            await self.speech.speak(guild_id, outcome.text)
        except Exception as exc:
            logger.exception("Speech pipeline crashed: %s", exc)
