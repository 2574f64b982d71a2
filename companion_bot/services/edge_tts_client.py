from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

import aiohttp
import edge_tts
from edge_tts.exceptions import EdgeTTSException

from ..speech.results import SynthesisResult

logger = logging.getLogger("companion_bot")


def speed_to_rate(speed: str) -> str:
    """Map a multiplier such as "1.25" to an edge-tts rate string ("+25%")."""
    try:
        value = float(speed)
    except (TypeError, ValueError):
        return "+0%"
    percent = int(round((value - 1.0) * 100))
    return f"{percent:+d}%"


class EdgeTTSClient:
    """Speech synthesis through Microsoft Edge's online voices (mp3 only)."""

    audio_format = "mp3"

    def __init__(self, voice: str = "en-US-AriaNeural", speed: str = "1.0", timeout_seconds: float = 30.0) -> None:
        self.voice = voice
        self.speed = speed
        self.timeout_seconds = float(timeout_seconds)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _collect(self, text: str, voice: str, rate: str) -> bytes:
        communicate = edge_tts.Communicate(text=text, voice=voice, rate=rate)
        chunks: list[bytes] = []
        async for chunk in communicate.stream():
            if chunk.get("type") == "audio" and chunk.get("data"):
                chunks.append(chunk["data"])
        return b"".join(chunks)

    async def synthesize(
        self,
        text: str,
        *,
        voice: str | None = None,
        speed: str | None = None,
        audio_format: str | None = None,
    ) -> SynthesisResult:
        cleaned = (text or "").strip()
        if not cleaned:
            return SynthesisResult.failure("invalid_input", "Text input is required and cannot be empty", "mp3")
        if audio_format not in (None, "mp3"):
            return SynthesisResult.failure("invalid_input", "edge-tts only produces mp3 audio", "mp3")
        try:
            audio = await asyncio.wait_for(
                self._collect(cleaned, voice or self.voice, speed_to_rate(speed or self.speed)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"edge-tts timed out after {self.timeout_seconds}s"
            logger.warning(reason)
            return SynthesisResult.failure("timeout", reason, "mp3")
        except (EdgeTTSException, aiohttp.ClientError) as exc:
            logger.warning("edge-tts synthesis failed: %s", exc)
            return SynthesisResult.failure("network_error", f"edge-tts error: {exc}", "mp3")

        if not audio:
            return SynthesisResult.failure("network_error", "edge-tts returned no audio", "mp3")
        return SynthesisResult.success(audio, "mp3")

    async def test_connection(self) -> bool:
        result = await self.synthesize("Test connection")
        if not result.ok:
            logger.warning("edge-tts connection test failed: %s", result.reason)
        return result.ok

    def service_info(self) -> Dict[str, Any]:
        return {"backend": "edge", "voice": self.voice, "speed": self.speed, "format": "MP3"}
