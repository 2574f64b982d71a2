from __future__ import annotations

import asyncio
import os
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_bot.services.edge_tts_client import speed_to_rate  # noqa: E402
from companion_bot.services.tts_client import TTSClient  # noqa: E402
from companion_bot.speech.audio_files import AudioFileManager  # noqa: E402
from companion_bot.speech.pipeline import SpeechPipeline  # noqa: E402
from companion_bot.speech.playback import VoicePlaybackManager  # noqa: E402
from companion_bot.speech.results import SynthesisResult  # noqa: E402


class _FakeResponse:
    def __init__(self, status: int, body: bytes) -> None:
        self.status = status
        self._body = body

    async def text(self, errors: str = "strict") -> str:
        return self._body.decode("utf-8", errors=errors)

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None


class _FakeSession:
    closed = False

    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, *, json: dict[str, Any], headers: dict[str, str]) -> _FakeResponse:
        self.calls.append({"url": url, "json": json, "headers": headers})
        return self.response

    async def close(self) -> None:
        self.closed = True


class _FakeConnection:
    def __init__(self, events: list[str], *, finish_after: Optional[float] = 0.01) -> None:
        self.events = events
        self.finish_after = finish_after
        self.connected = True
        self.active = False
        self.overlaps = 0
        self.file_existed: list[bool] = []
        self.disconnects = 0

    def is_connected(self) -> bool:
        return self.connected

    def play(self, path: Path, after: Callable[[Optional[Exception]], None]) -> None:
        if self.active:
            self.overlaps += 1
        self.active = True
        self.file_existed.append(path.exists())
        self.events.append(f"start:{path.name}")
        if self.finish_after is None:
            return

        def _finish() -> None:
            self.active = False
            self.events.append(f"end:{path.name}")
            after(None)

        asyncio.get_running_loop().call_later(self.finish_after, _finish)

    def stop(self) -> None:
        self.active = False

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1


class _FakeConnector:
    def __init__(self, *, connect_delay: float = 0.0, finish_after: Optional[float] = 0.01) -> None:
        self.connect_delay = connect_delay
        self.finish_after = finish_after
        self.events: list[str] = []
        self.connections: list[_FakeConnection] = []
        self.released: list[str] = []

    async def connect(self, guild_id: str, channel_id: str) -> _FakeConnection:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        connection = _FakeConnection(self.events, finish_after=self.finish_after)
        self.connections.append(connection)
        return connection

    async def release(self, guild_id: str) -> None:
        self.released.append(guild_id)


class _FakeSynthesizer:
    audio_format = "wav"

    def __init__(self, result: SynthesisResult | None = None) -> None:
        self.result = result or SynthesisResult.success(b"RIFF-fake-audio", "wav")
        self.texts: list[str] = []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def synthesize(self, text: str, **kwargs: Any) -> SynthesisResult:
        self.texts.append(text)
        return self.result

    async def test_connection(self) -> bool:
        return self.result.ok

    def service_info(self) -> Dict[str, Any]:
        return {"backend": "fake"}


def test_tts_client_posts_payload_and_returns_audio() -> None:
    async def _run() -> None:
        client = TTSClient("https://tts.example/speech", "secret", voice="hn-quynhanh", audio_format="mp3")
        session = _FakeSession(_FakeResponse(200, b"ID3audio"))
        client._session = session  # type: ignore[assignment]

        result = await client.synthesize("  xin chao  ")

        assert result.ok
        assert result.audio == b"ID3audio"
        assert result.audio_format == "mp3"
        call = session.calls[0]
        assert call["json"] == {"text": "xin chao", "voice": "hn-quynhanh", "speed": "1.0", "return_option": 3}
        assert call["headers"]["Authorization"] == "Bearer secret"

    asyncio.run(_run())


def test_tts_client_maps_non_200_to_http_error() -> None:
    async def _run() -> None:
        client = TTSClient("https://tts.example/speech", "secret")
        client._session = _FakeSession(_FakeResponse(401, b"bad token"))  # type: ignore[assignment]

        result = await client.synthesize("hello")

        assert result.kind == "http_error"
        assert result.status == 401
        assert "401" in result.reason
        assert result.audio == b""

    asyncio.run(_run())


def test_tts_client_rejects_blank_text_without_network() -> None:
    async def _run() -> None:
        client = TTSClient("https://tts.example/speech", "secret")
        session = _FakeSession(_FakeResponse(200, b"x"))
        client._session = session  # type: ignore[assignment]

        result = await client.synthesize("   ")

        assert result.kind == "invalid_input"
        assert session.calls == []

    asyncio.run(_run())


def test_speed_to_rate() -> None:
    assert speed_to_rate("1.0") == "+0%"
    assert speed_to_rate("1.25") == "+25%"
    assert speed_to_rate("0.5") == "-50%"
    assert speed_to_rate("fast") == "+0%"


def test_guild_playback_is_serialised(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector()
        manager = VoicePlaybackManager(connector, default_channel_id="v1", playback_timeout=2.0, max_pending=1)
        first = tmp_path / "a.wav"
        second = tmp_path / "b.wav"
        first.write_bytes(b"a")
        second.write_bytes(b"b")

        results = await asyncio.gather(manager.play_file("g1", first), manager.play_file("g1", second))

        assert [result.kind for result in results] == ["ok", "ok"]
        assert connector.events == ["start:a.wav", "end:a.wav", "start:b.wav", "end:b.wav"]
        assert len(connector.connections) == 1
        assert connector.connections[0].overlaps == 0
        await manager.shutdown()

    asyncio.run(_run())


def test_playback_rejects_when_guild_queue_is_full(tmp_path: Path) -> None:
    async def _run() -> None:
        manager = VoicePlaybackManager(_FakeConnector(), default_channel_id="v1", max_pending=0)
        path = tmp_path / "a.wav"
        path.write_bytes(b"a")

        results = await asyncio.gather(manager.play_file("g1", path), manager.play_file("g1", path))

        assert sorted(result.kind for result in results) == ["busy", "ok"]
        await manager.shutdown()

    asyncio.run(_run())


def test_guilds_play_independently(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector()
        manager = VoicePlaybackManager(connector, default_channel_id="v1", max_pending=0)
        path = tmp_path / "a.wav"
        path.write_bytes(b"a")

        results = await asyncio.gather(manager.play_file("g1", path), manager.play_file("g2", path))

        assert [result.kind for result in results] == ["ok", "ok"]
        assert manager.stats()["active_connections"] == 2
        await manager.shutdown()
        assert manager.stats()["guilds"] == 0

    asyncio.run(_run())


def test_connect_timeout_releases_voice_state(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector(connect_delay=1.0)
        manager = VoicePlaybackManager(connector, default_channel_id="v1", connect_timeout=0.05)

        result = await manager.play_file("g1", tmp_path / "a.wav")

        assert result.kind == "connect_timeout"
        assert connector.released == ["g1"]
        assert not manager.is_connected("g1")
        await manager.shutdown()

    asyncio.run(_run())


def test_playback_without_target_channel_reports_no_channel(tmp_path: Path) -> None:
    async def _run() -> None:
        manager = VoicePlaybackManager(_FakeConnector())

        result = await manager.play_file("g1", tmp_path / "a.wav")
        leave = await manager.leave("g2")

        assert result.kind == "no_channel"
        assert leave.kind == "no_channel"
        await manager.shutdown()

    asyncio.run(_run())


def test_stuck_player_times_out_and_disconnects(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector(finish_after=None)
        manager = VoicePlaybackManager(connector, default_channel_id="v1", playback_timeout=0.05)
        path = tmp_path / "a.wav"
        path.write_bytes(b"a")

        result = await manager.play_file("g1", path)

        assert result.kind == "playback_timeout"
        assert connector.connections[0].disconnects == 1
        assert not manager.is_connected("g1")
        await manager.shutdown()

    asyncio.run(_run())


def test_join_then_leave(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector()
        manager = VoicePlaybackManager(connector)

        joined = await manager.join("g1", "v9")
        assert joined.ok
        assert manager.is_connected("g1")

        left = await manager.leave("g1")
        assert left.ok
        assert not manager.is_connected("g1")
        assert connector.connections[0].disconnects == 1
        await manager.shutdown()

    asyncio.run(_run())


def test_pipeline_speaks_and_removes_temp_file(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector()
        audio_files = AudioFileManager(tmp_path)
        audio_files.init()
        playback = VoicePlaybackManager(connector, default_channel_id="v1")
        synthesizer = _FakeSynthesizer()
        pipeline = SpeechPipeline(synthesizer, audio_files, playback, max_chars=40)

        result = await pipeline.speak("g1", "Hello   there! " * 10)

        assert result.ok
        assert result.kind == "spoken"
        assert connector.connections[0].file_existed == [True]
        assert list(tmp_path.glob("temp_*")) == []
        assert len(synthesizer.texts[0]) == 40
        assert synthesizer.texts[0].endswith("...")
        await playback.shutdown()

    asyncio.run(_run())


def test_pipeline_synthesis_failure_creates_no_file(tmp_path: Path) -> None:
    async def _run() -> None:
        connector = _FakeConnector()
        audio_files = AudioFileManager(tmp_path)
        audio_files.init()
        playback = VoicePlaybackManager(connector, default_channel_id="v1")
        failed = SynthesisResult.failure("http_error", "TTS API returned status 500", "wav", status=500)
        pipeline = SpeechPipeline(_FakeSynthesizer(failed), audio_files, playback)

        result = await pipeline.speak("g1", "hello")

        assert result.kind == "synthesis_failed"
        assert list(tmp_path.iterdir()) == []
        assert connector.connections == []

    asyncio.run(_run())


def test_pipeline_playback_failure_still_removes_temp_file(tmp_path: Path) -> None:
    async def _run() -> None:
        audio_files = AudioFileManager(tmp_path)
        audio_files.init()
        playback = VoicePlaybackManager(_FakeConnector())
        pipeline = SpeechPipeline(_FakeSynthesizer(), audio_files, playback)

        result = await pipeline.speak("g1", "hello")

        assert result.kind == "playback_failed"
        assert result.playback is not None and result.playback.kind == "no_channel"
        assert list(tmp_path.glob("temp_*")) == []
        await playback.shutdown()

    asyncio.run(_run())


def test_disabled_pipeline_and_tts_test_file(tmp_path: Path) -> None:
    async def _run() -> None:
        audio_files = AudioFileManager(tmp_path)
        audio_files.init()
        playback = VoicePlaybackManager(_FakeConnector())
        disabled = SpeechPipeline(_FakeSynthesizer(), audio_files, playback, enabled=False)
        enabled = SpeechPipeline(_FakeSynthesizer(), audio_files, playback)

        assert (await disabled.speak("g1", "hello")).kind == "disabled"
        saved = await enabled.test_tts("testing one two")

        assert saved.kind == "saved"
        assert saved.audio_path is not None and saved.audio_path.exists()
        assert enabled.stats()["audio"]["total_files"] == 1

    asyncio.run(_run())


def test_audio_file_manager_tracks_and_cleans_files(tmp_path: Path) -> None:
    async def _run() -> None:
        manager = AudioFileManager(tmp_path / "audio")
        manager.init()

        record = await manager.save_audio_file(b"12345", "mp3", "hi")
        assert manager.exists(record.id)
        assert manager.get_audio_file(record.id) == record
        assert manager.list_audio_files() == [record]
        assert await manager.get_audio_data(record.id) == b"12345"
        assert manager.stats()["format_counts"] == {"mp3": 1}

        fresh_temp = await manager.create_temp_file(b"x", "wav")
        stale_temp = await manager.create_temp_file(b"y", "wav")
        old = time.time() - 3600
        os.utime(stale_temp, (old, old))

        assert manager.cleanup_temp_files(300) == 1
        assert fresh_temp.exists()
        assert not stale_temp.exists()
        assert manager.cleanup_old_files(24) == 0

        manager._files[record.id] = replace(record, created_at=old - 86400)
        assert manager.cleanup_old_files(24) == 1
        assert not record.path.exists()
        assert manager.delete_audio_file(record.id) is False

    asyncio.run(_run())
