from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Callable, Optional

import discord

logger = logging.getLogger("companion_bot")


class DiscordVoiceConnection:
    """Adapts a discord.py `VoiceClient` to the playback worker's connection."""

    def __init__(self, voice_client: discord.VoiceClient) -> None:
        self.voice_client = voice_client

    @property
    def channel_id(self) -> Optional[str]:
        channel = self.voice_client.channel
        return str(channel.id) if channel is not None else None

    def is_connected(self) -> bool:
        return self.voice_client.is_connected()

    def play(self, path: Path, after: Callable[[Optional[Exception]], None]) -> None:
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()
        source = discord.FFmpegPCMAudio(str(path))
        self.voice_client.play(source, after=after)

    def stop(self) -> None:
        self.voice_client.stop()

    async def disconnect(self) -> None:
        await self.voice_client.disconnect(force=True)


class DiscordVoiceConnector:
    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _resolve_channel(self, guild: discord.Guild, channel_id: str) -> discord.abc.Connectable:
        channel = guild.get_channel(int(channel_id))
        if channel is None:
            with contextlib.suppress(discord.HTTPException):
                channel = await guild.fetch_channel(int(channel_id))
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise LookupError(f"Voice channel {channel_id} not found in guild {guild.id}")
        return channel

    async def connect(self, guild_id: str, channel_id: str) -> DiscordVoiceConnection:
        guild = self.client.get_guild(int(guild_id))
        if guild is None:
            raise LookupError(f"Guild {guild_id} is not available")
        channel = await self._resolve_channel(guild, channel_id)

        existing = guild.voice_client
        if isinstance(existing, discord.VoiceClient) and existing.is_connected():
            if existing.channel is None or existing.channel.id != channel.id:
                await existing.move_to(channel)
            return DiscordVoiceConnection(existing)
        if existing is not None:
            with contextlib.suppress(Exception):
                await existing.disconnect(force=True)

        voice_client = await channel.connect(self_deaf=True, reconnect=True)
        logger.info("Joined voice channel %s in guild %s", getattr(channel, "name", channel_id), guild.name)
        return DiscordVoiceConnection(voice_client)

    async def release(self, guild_id: str) -> None:
        guild = self.client.get_guild(int(guild_id))
        if guild is None or guild.voice_client is None:
            return
        await asyncio.wait_for(guild.voice_client.disconnect(force=True), timeout=4.0)
