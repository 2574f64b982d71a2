from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from .context.assembler import KeyedLocks
from .context.models import ServerContext, now_ms

if TYPE_CHECKING:
    from .memory.base import ContextStore

logger = logging.getLogger("companion_bot")

MAX_PREFIX_LENGTH = 5


def validate_prefix(prefix: str) -> str:
    value = (prefix or "").strip()
    if not value:
        raise ValueError("Prefix cannot be empty")
    if len(value) > MAX_PREFIX_LENGTH or any(ch.isspace() for ch in value):
        raise ValueError(f"Prefix must be 1-{MAX_PREFIX_LENGTH} characters without spaces")
    return value


def _with(items: Iterable[str], item: str) -> list[str]:
    values = list(items)
    return values if item in values else [*values, item]


def _without(items: Iterable[str], item: str) -> list[str]:
    return [value for value in items if value != item]


class ChannelGate:
    """Which channels the bot listens in, and each server's command prefix.

    The ignore list always wins; an empty listen list means every channel
    is listened to. Lists seeded from the environment are process-wide,
    changes made at runtime are mirrored into the owning ServerContext so
    they survive a restart.
    """

    def __init__(
        self,
        store: Optional["ContextStore"] = None,
        *,
        locks: KeyedLocks | None = None,
        listen_channel_ids: Iterable[str] = (),
        ignored_channel_ids: Iterable[str] = (),
        default_prefix: str = "!",
    ) -> None:
        self.store = store
        self.locks = locks or KeyedLocks()
        self.default_prefix = validate_prefix(default_prefix)
        self._listen: set[str] = {str(item) for item in listen_channel_ids}
        self._ignored: set[str] = {str(item) for item in ignored_channel_ids}
        self._prefixes: dict[str, str] = {}

    async def load(self, limit: int = 1000) -> int:
        """Merge channel lists and prefixes mirrored in stored server contexts."""
        if self.store is None:
            return 0
        servers = await self.store.list_server_contexts(limit=limit)
        for server in servers:
            self._listen.update(server.listening_channels)
            self._ignored.update(server.ignoring_channels)
            if server.command_prefix and server.command_prefix != self.default_prefix:
                self._prefixes[server.server_id] = server.command_prefix
        logger.info(
            "Channel gate loaded from %s servers: listen=%s ignored=%s",
            len(servers),
            len(self._listen),
            len(self._ignored),
        )
        return len(servers)

    def should_listen(self, channel_id: str) -> bool:
        key = str(channel_id)
        if key in self._ignored:
            return False
        if not self._listen:
            return True
        return key in self._listen

    def prefix_for(self, guild_id: Optional[str]) -> str:
        if guild_id is None:
            return self.default_prefix
        return self._prefixes.get(str(guild_id), self.default_prefix)

    def listen_channels(self) -> List[str]:
        return sorted(self._listen)

    def ignored_channels(self) -> List[str]:
        return sorted(self._ignored)

    async def _mirror(self, guild_id: str, guild_name: str, mutate: Callable[[ServerContext], ServerContext]) -> None:
        if self.store is None:
            return
        async with self.locks.hold(f"server:{guild_id}"):
            server = await self.store.get_server_context(guild_id)
            if server is None:
                server = await self.store.create_server_context(
                    ServerContext(server_id=guild_id, server_name=guild_name or "Unknown", last_activity=now_ms())
                )
            await self.store.update_server_context(mutate(server))

    async def set_prefix(self, guild_id: str, prefix: str, *, guild_name: str = "") -> str:
        value = validate_prefix(prefix)
        await self._mirror(str(guild_id), guild_name, lambda server: replace(server, command_prefix=value))
        self._prefixes[str(guild_id)] = value
        logger.info("Command prefix for guild %s set to %r", guild_id, value)
        return value

    async def add_listen_channel(self, guild_id: str, channel_id: str, *, guild_name: str = "") -> bool:
        key = str(channel_id)
        if key in self._listen:
            return False
        await self._mirror(
            str(guild_id),
            guild_name,
            lambda server: replace(server, listening_channels=_with(server.listening_channels, key)),
        )
        self._listen.add(key)
        logger.info("Added channel %s to listen list", key)
        return True

    async def remove_listen_channel(self, guild_id: str, channel_id: str, *, guild_name: str = "") -> bool:
        key = str(channel_id)
        if key not in self._listen:
            return False
        await self._mirror(
            str(guild_id),
            guild_name,
            lambda server: replace(server, listening_channels=_without(server.listening_channels, key)),
        )
        self._listen.discard(key)
        logger.info("Removed channel %s from listen list", key)
        return True

    async def add_ignored_channel(self, guild_id: str, channel_id: str, *, guild_name: str = "") -> bool:
        key = str(channel_id)
        if key in self._ignored:
            return False
        await self._mirror(
            str(guild_id),
            guild_name,
            lambda server: replace(server, ignoring_channels=_with(server.ignoring_channels, key)),
        )
        self._ignored.add(key)
        logger.info("Added channel %s to ignore list", key)
        return True

    async def remove_ignored_channel(self, guild_id: str, channel_id: str, *, guild_name: str = "") -> bool:
        key = str(channel_id)
        if key not in self._ignored:
            return False
        await self._mirror(
            str(guild_id),
            guild_name,
            lambda server: replace(server, ignoring_channels=_without(server.ignoring_channels, key)),
        )
        self._ignored.discard(key)
        logger.info("Removed channel %s from ignore list", key)
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "listen_channels": len(self._listen),
            "ignored_channels": len(self._ignored),
            "custom_prefixes": len(self._prefixes),
            "listening_everywhere": not self._listen,
        }
