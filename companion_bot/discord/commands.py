from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import discord

from ..context.listening import LISTENING_MODES, MODE_DESCRIPTIONS
from ..errors import ContextStoreError
from .common import parse_channel_id
from .message_processor import ParsedCommand

logger = logging.getLogger("companion_bot")

CommandHandler = Callable[[discord.Message, tuple[str, ...]], Awaitable[None]]


def _percent(value: float) -> str:
    return f"{round(value * 100)}%"


class CommandMixin:
    """Administrative text commands. Every command replies with an explicit outcome."""

    def _command_table(self) -> Dict[str, CommandHandler]:
        return {
            "listening": self._cmd_listening,
            "mode": self._cmd_listening,
            "listen": self._cmd_listen,
            "ignore": self._cmd_ignore,
            "prefix": self._cmd_prefix,
            "setprefix": self._cmd_prefix,
            "join": self._cmd_join,
            "leave": self._cmd_leave,
            "stats": self._cmd_stats,
            "tts-test": self._cmd_tts_test,
            "ttstest": self._cmd_tts_test,
        }

    async def _dispatch_command(self, message: discord.Message, command: ParsedCommand) -> bool:
        handler = self._command_table().get(command.name)
        if handler is None:
            return False
        logger.info("Command %s%s from %s", command.prefix, command.name, message.author)
        await handler(message, command.args)
        return True

    @staticmethod
    def _is_admin(message: discord.Message) -> bool:
        permissions = getattr(message.author, "guild_permissions", None)
        return bool(permissions is not None and permissions.manage_guild)

    async def _require_admin(self, message: discord.Message) -> bool:
        if message.guild is None:
            await message.reply("This command works only in a server.")
            return False
        if not self._is_admin(message):
            await message.reply("You need the Manage Server permission for this command.")
            return False
        return True

    async def _cmd_listening(self, message: discord.Message, args: tuple[str, ...]) -> None:
        channel_id = str(message.channel.id)
        if not args:
            current = self.registry.get_mode(channel_id)
            lines = [f"Listening mode: **{current.mode}** ({MODE_DESCRIPTIONS[current.mode]})"]
            if current.mode == "smart-listening":
                lines.append(f"Relevance threshold: {_percent(self.registry.threshold_for(channel_id))}")
            lines.append("Available modes:")
            lines.extend(f"- **{mode}**: {MODE_DESCRIPTIONS[mode]}" for mode in LISTENING_MODES)
            await message.reply("\n".join(lines))
            return
        if not await self._require_admin(message):
            return

        threshold: Optional[Any] = None
        if len(args) > 1:
            try:
                threshold = float(args[1])
            except ValueError:
                threshold = args[1]
        change = self.registry.set_mode(channel_id, args[0], threshold)
        if not change.ok:
            await message.reply(f"Could not change listening mode: {change.error}")
            return
        reply = f"Listening mode changed from **{change.previous.mode}** to **{change.mode.mode}**."
        if change.mode.mode == "smart-listening":
            reply += f" Threshold: {_percent(self.registry.threshold_for(channel_id))}."
        await message.reply(reply)

    async def _cmd_channel_list(self, message: discord.Message, args: tuple[str, ...], *, ignore: bool) -> None:
        label = "ignore" if ignore else "listen"
        action = args[0].lower() if args else "list"
        if action == "list":
            channels = self.gate.ignored_channels() if ignore else self.gate.listen_channels()
            if not channels:
                empty = "No ignored channels." if ignore else "Listening in every channel."
                await message.reply(empty)
            else:
                await message.reply(f"{label.title()} list: " + ", ".join(f"<#{item}>" for item in channels))
            return
        if action not in {"add", "remove"}:
            await message.reply(f"Usage: {label} add|remove|list [#channel]")
            return
        if not await self._require_admin(message):
            return

        channel_id = parse_channel_id(args[1]) if len(args) > 1 else str(message.channel.id)
        if channel_id is None:
            await message.reply(f"`{args[1]}` is not a channel mention or id.")
            return
        guild = message.guild
        assert guild is not None
        if action == "add":
            method = self.gate.add_ignored_channel if ignore else self.gate.add_listen_channel
        else:
            method = self.gate.remove_ignored_channel if ignore else self.gate.remove_listen_channel
        try:
            changed = await method(str(guild.id), channel_id, guild_name=guild.name)
        except ContextStoreError as exc:
            logger.error("Could not save %s list change: %s", label, exc)
            await message.reply(f"Could not save the {label} list change. Try again later.")
            return
        if not changed:
            state = "already in" if action == "add" else "not in"
            await message.reply(f"<#{channel_id}> is {state} the {label} list.")
            return
        verb = "Added" if action == "add" else "Removed"
        direction = "to" if action == "add" else "from"
        await message.reply(f"{verb} <#{channel_id}> {direction} the {label} list.")

    async def _cmd_listen(self, message: discord.Message, args: tuple[str, ...]) -> None:
        await self._cmd_channel_list(message, args, ignore=False)

    async def _cmd_ignore(self, message: discord.Message, args: tuple[str, ...]) -> None:
        await self._cmd_channel_list(message, args, ignore=True)

    async def _cmd_prefix(self, message: discord.Message, args: tuple[str, ...]) -> None:
        if not args:
            guild_id = str(message.guild.id) if message.guild else None
            await message.reply(f"Current command prefix: `{self.gate.prefix_for(guild_id)}`")
            return
        if not await self._require_admin(message):
            return
        guild = message.guild
        assert guild is not None
        try:
            prefix = await self.gate.set_prefix(str(guild.id), args[0], guild_name=guild.name)
        except ValueError as exc:
            await message.reply(f"Invalid prefix: {exc}")
            return
        except ContextStoreError as exc:
            logger.error("Could not save command prefix: %s", exc)
            await message.reply("Could not save the new prefix. Try again later.")
            return
        await message.reply(f"Command prefix set to `{prefix}`.")

    async def _cmd_join(self, message: discord.Message, args: tuple[str, ...]) -> None:
        if message.guild is None:
            await message.reply("`join` works only in a server.")
            return
        if self.speech is None:
            await message.reply("Voice mode is disabled in config.")
            return
        channel_id: Optional[str] = None
        if args:
            channel_id = parse_channel_id(args[0])
            if channel_id is None:
                await message.reply(f"`{args[0]}` is not a voice channel id.")
                return
        else:
            voice_state = getattr(message.author, "voice", None)
            if voice_state is not None and voice_state.channel is not None:
                channel_id = str(voice_state.channel.id)
        result = await self.playback.join(str(message.guild.id), channel_id)
        if result.ok:
            await message.reply("Connected to the voice channel.")
        elif result.kind == "no_channel":
            await message.reply("Join a voice channel or pass a channel id, then run `join` again.")
        elif result.kind == "connect_timeout":
            await message.reply("Voice connection timed out. Try again in a few seconds.")
        else:
            await message.reply(f"Could not connect to the voice channel ({result.reason or result.kind}).")

    async def _cmd_leave(self, message: discord.Message, args: tuple[str, ...]) -> None:
        if message.guild is None:
            await message.reply("`leave` works only in a server.")
            return
        result = await self.playback.leave(str(message.guild.id))
        await message.reply("Left the voice channel." if result.ok else "I am not in a voice channel.")

    async def _cmd_stats(self, message: discord.Message, args: tuple[str, ...]) -> None:
        lines = ["**Bot statistics**"]
        try:
            db = await self.store.get_database_stats()
        except ContextStoreError as exc:
            logger.warning("Stats query failed: %s", exc)
            lines.append("Database: unavailable")
        else:
            lines.append(
                f"Database ({self.store.backend_name}): {db['users']} users, {db['channels']} channels, "
                f"{db['servers']} servers, {db['messages']} messages "
                f"({db['user_messages']} user / {db['assistant_messages']} assistant)"
            )
        orchestrator = self.orchestrator.stats()
        model = orchestrator["model"]
        lines.append(
            f"Replies this session: {orchestrator['replied']} real, {orchestrator['fallback']} fallback, "
            f"{orchestrator['skipped']} skipped, {orchestrator['failed']} failed (model {model.get('model')})"
        )
        lines.append(f"Channels: {self.gate.stats()}")
        if self.speech is not None:
            speech = self.speech.stats()
            audio = speech["audio"]
            playback = speech["playback"]
            lines.append(
                f"Audio: {audio['total_files']} files, {audio['total_size_mb']} MB; "
                f"voice connections: {playback['active_connections']}"
            )
        else:
            lines.append("Voice: disabled")
        await message.reply("\n".join(lines))

    async def _cmd_tts_test(self, message: discord.Message, args: tuple[str, ...]) -> None:
        if self.speech is None:
            await message.reply("Voice mode is disabled in config.")
            return
        text = " ".join(args) or "Hello! This is a text to speech test."
        result = await self.speech.test_tts(text)
        if result.kind != "saved":
            await message.reply(f"TTS test failed: {result.reason}")
            return
        synthesis = result.synthesis
        assert synthesis is not None
        await message.reply(
            f"TTS test ok: {len(synthesis.audio)} bytes of {synthesis.audio_format.upper()} audio."
        )
        if message.guild is not None and self.playback.is_connected(str(message.guild.id)):
            spoken = await self.speech.speak(str(message.guild.id), text)
            if spoken.kind != "spoken":
                await message.reply(f"Playback failed: {spoken.reason}")
