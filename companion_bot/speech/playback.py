from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional, Protocol

from .results import PlaybackResult

logger = logging.getLogger("companion_bot")

RequestAction = Literal["play", "join", "leave"]


class VoiceConnection(Protocol):
    def is_connected(self) -> bool: ...

    def play(self, path: Path, after: Callable[[Optional[Exception]], None]) -> None: ...

    def stop(self) -> None: ...

    async def disconnect(self) -> None: ...


class VoiceConnector(Protocol):
    async def connect(self, guild_id: str, channel_id: str) -> VoiceConnection: ...

    async def release(self, guild_id: str) -> None: ...


class GuildAudioPlayer:
    """Plays one file at a time over a voice connection and waits for idle."""

    def __init__(self, connection: VoiceConnection) -> None:
        self.connection = connection
        self.playing = False

    async def play(self, path: Path, *, timeout: float) -> int:
        loop = asyncio.get_running_loop()
        finished = asyncio.Event()
        errors: list[Exception] = []

        def _after_play(error: Optional[Exception]) -> None:
            if error:
                errors.append(error)
            loop.call_soon_threadsafe(finished.set)

        started = time.perf_counter()
        self.playing = True
        try:
            self.connection.play(path, _after_play)
            await asyncio.wait_for(finished.wait(), timeout=timeout)
        finally:
            self.playing = False
        if errors:
            raise errors[0]
        return int((time.perf_counter() - started) * 1000)

    def stop(self) -> None:
        with contextlib.suppress(Exception):
            self.connection.stop()
        self.playing = False


@dataclass(slots=True)
class PlaybackRequest:
    action: RequestAction
    path: Optional[Path] = None
    channel_id: Optional[str] = None


class GuildPlaybackWorker:
    """Actor owning one guild's voice connection and player.

    Requests are handled strictly one at a time from the worker's own
    queue. At most `max_pending` requests may wait behind the active one;
    beyond that a request is rejected as `busy`.
    """

    def __init__(
        self,
        guild_id: str,
        connector: VoiceConnector,
        *,
        default_channel_id: Optional[str] = None,
        connect_timeout: float = 30.0,
        playback_timeout: float = 30.0,
        max_pending: int = 1,
    ) -> None:
        self.guild_id = guild_id
        self.connector = connector
        self.default_channel_id = default_channel_id
        self.connect_timeout = connect_timeout
        self.playback_timeout = playback_timeout
        self.max_pending = max(0, int(max_pending))
        self.connection: Optional[VoiceConnection] = None
        self.player: Optional[GuildAudioPlayer] = None
        self.channel_id: Optional[str] = None
        self._queue: asyncio.Queue[tuple[PlaybackRequest, asyncio.Future[PlaybackResult]]] = asyncio.Queue()
        self._in_flight = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def outstanding(self) -> int:
        return self._queue.qsize() + (1 if self._in_flight else 0)

    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected()

    def _ensure_task(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"voice-worker-{self.guild_id}")

    async def submit(self, request: PlaybackRequest) -> PlaybackResult:
        if request.action == "play" and self.outstanding > self.max_pending:
            return PlaybackResult("busy", self.guild_id, "Playback already in progress for this guild")
        future: asyncio.Future[PlaybackResult] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((request, future))
        self._ensure_task()
        return await future

    async def _run(self) -> None:
        while True:
            request, future = await self._queue.get()
            self._in_flight = True
            try:
                result = await self._handle(request)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as exc:
                logger.exception("Voice worker failed for guild=%s", self.guild_id)
                await self._teardown()
                result = PlaybackResult("error", self.guild_id, str(exc))
            finally:
                self._in_flight = False
                self._queue.task_done()
            if not future.done():
                future.set_result(result)

    async def _handle(self, request: PlaybackRequest) -> PlaybackResult:
        if request.action == "leave":
            was_connected = self.connection is not None
            await self._teardown()
            return PlaybackResult("ok" if was_connected else "no_channel", self.guild_id)

        failure = await self._ensure_connection(request.channel_id)
        if failure is not None:
            return failure
        if request.action == "join":
            return PlaybackResult("ok", self.guild_id)

        assert request.path is not None
        if self.player is None:
            assert self.connection is not None
            self.player = GuildAudioPlayer(self.connection)
        try:
            duration_ms = await self.player.play(request.path, timeout=self.playback_timeout)
        except asyncio.TimeoutError:
            logger.warning("Playback did not finish within %ss in guild=%s", self.playback_timeout, self.guild_id)
            await self._teardown()
            return PlaybackResult("playback_timeout", self.guild_id, "Audio player did not become idle in time")
        return PlaybackResult("ok", self.guild_id, duration_ms=duration_ms)

    async def _ensure_connection(self, channel_id: Optional[str]) -> Optional[PlaybackResult]:
        target = channel_id or self.channel_id or self.default_channel_id
        if self.is_connected() and (channel_id is None or channel_id == self.channel_id):
            return None
        if target is None:
            return PlaybackResult("no_channel", self.guild_id, "No voice channel to join")
        if self.connection is not None:
            await self._teardown()

        try:
            self.connection = await asyncio.wait_for(
                self.connector.connect(self.guild_id, target),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Voice connect timed out after %ss for guild=%s channel=%s",
                self.connect_timeout,
                self.guild_id,
                target,
            )
            await self._teardown()
            with contextlib.suppress(Exception):
                await self.connector.release(self.guild_id)
            return PlaybackResult(
                "connect_timeout",
                self.guild_id,
                f"Voice connect timed out after {self.connect_timeout}s",
            )
        self.channel_id = target
        self.player = None
        logger.info("Voice connected in guild=%s channel=%s", self.guild_id, target)
        return None

    async def _teardown(self) -> None:
        if self.player is not None:
            self.player.stop()
        self.player = None
        connection, self.connection = self.connection, None
        self.channel_id = None
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.disconnect()

    async def shutdown(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
        await self._teardown()


class VoicePlaybackManager:
    """Routes playback requests to one worker per guild."""

    def __init__(
        self,
        connector: VoiceConnector,
        *,
        default_channel_id: Optional[str] = None,
        connect_timeout: float = 30.0,
        playback_timeout: float = 30.0,
        max_pending: int = 1,
    ) -> None:
        self.connector = connector
        self.default_channel_id = default_channel_id
        self.connect_timeout = connect_timeout
        self.playback_timeout = playback_timeout
        self.max_pending = max_pending
        self._workers: dict[str, GuildPlaybackWorker] = {}

    def worker(self, guild_id: str) -> GuildPlaybackWorker:
        key = str(guild_id)
        worker = self._workers.get(key)
        if worker is None:
            worker = GuildPlaybackWorker(
                key,
                self.connector,
                default_channel_id=self.default_channel_id,
                connect_timeout=self.connect_timeout,
                playback_timeout=self.playback_timeout,
                max_pending=self.max_pending,
            )
            self._workers[key] = worker
        return worker

    async def play_file(self, guild_id: str, path: Path, *, channel_id: Optional[str] = None) -> PlaybackResult:
        return await self.worker(guild_id).submit(PlaybackRequest("play", path=path, channel_id=channel_id))

    async def join(self, guild_id: str, channel_id: Optional[str] = None) -> PlaybackResult:
        return await self.worker(guild_id).submit(PlaybackRequest("join", channel_id=channel_id))

    async def leave(self, guild_id: str) -> PlaybackResult:
        worker = self._workers.get(str(guild_id))
        if worker is None:
            return PlaybackResult("no_channel", str(guild_id), "Not connected")
        return await worker.submit(PlaybackRequest("leave"))

    def is_connected(self, guild_id: str) -> bool:
        worker = self._workers.get(str(guild_id))
        return worker is not None and worker.is_connected()

    def stats(self) -> Dict[str, Any]:
        return {
            "guilds": len(self._workers),
            "active_connections": sum(1 for worker in self._workers.values() if worker.is_connected()),
            "active_players": sum(1 for worker in self._workers.values() if worker.player is not None),
            "outstanding_requests": sum(worker.outstanding for worker in self._workers.values()),
        }

    async def shutdown(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            await worker.shutdown()
