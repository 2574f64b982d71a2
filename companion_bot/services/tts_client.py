from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Protocol

import aiohttp

from ..speech.results import SynthesisResult

logger = logging.getLogger("companion_bot")

AUDIO_FORMATS = {"wav": 2, "mp3": 3}


class SpeechSynthesizer(Protocol):
    audio_format: str

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def synthesize(
        self,
        text: str,
        *,
        voice: str | None = None,
        speed: str | None = None,
        audio_format: str | None = None,
    ) -> SynthesisResult: ...

    async def test_connection(self) -> bool: ...

    def service_info(self) -> Dict[str, Any]: ...


class TTSClient:
    """HTTP speech synthesis client.

    Posts `{text, voice, speed, return_option}` with a bearer token and
    expects the raw audio bytes back. Never raises for expected failures;
    everything comes back as a `SynthesisResult`.
    """

    def __init__(
        self,
        url: str,
        token: str,
        voice: str = "hn-quynhanh",
        speed: str = "1.0",
        audio_format: str = "wav",
        timeout_seconds: float = 30.0,
    ) -> None:
        if audio_format not in AUDIO_FORMATS:
            raise ValueError(f"TTS format must be one of {sorted(AUDIO_FORMATS)}, got {audio_format!r}")
        self.url = url
        self.token = token
        self.voice = voice
        self.speed = speed
        self.audio_format = audio_format
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def synthesize(
        self,
        text: str,
        *,
        voice: str | None = None,
        speed: str | None = None,
        audio_format: str | None = None,
    ) -> SynthesisResult:
        fmt = audio_format or self.audio_format
        cleaned = (text or "").strip()
        if not cleaned:
            return SynthesisResult.failure("invalid_input", "Text input is required and cannot be empty", fmt)
        if fmt not in AUDIO_FORMATS:
            return SynthesisResult.failure("invalid_input", f"Unsupported audio format {fmt!r}", fmt)

        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        payload = {
            "text": cleaned,
            "voice": voice or self.voice,
            "speed": speed or self.speed,
            "return_option": AUDIO_FORMATS[fmt],
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.token}"}
        try:
            async with self._session.post(self.url, json=payload, headers=headers) as response:
                if response.status != 200:
                    body = (await response.text(errors="replace"))[:300]
                    reason = f"TTS API returned status {response.status}"
                    if body:
                        reason = f"{reason} - {body}"
                    logger.warning("TTS synthesis failed: %s", reason)
                    return SynthesisResult.failure("http_error", reason, fmt, status=response.status)
                audio = await response.read()
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            reason = f"TTS request timed out after {self.timeout.total}s"
            logger.warning(reason)
            return SynthesisResult.failure("timeout", reason, fmt)
        except aiohttp.ClientError as exc:
            logger.warning("TTS network error: %s", exc)
            return SynthesisResult.failure("network_error", f"TTS network error: {exc}", fmt)

        if not audio:
            return SynthesisResult.failure("http_error", "TTS API returned an empty body", fmt, status=200)
        logger.info("TTS synthesis ok: %s bytes of %s audio", len(audio), fmt.upper())
        return SynthesisResult.success(audio, fmt)

    async def test_connection(self) -> bool:
        result = await self.synthesize("Test connection")
        if not result.ok:
            logger.warning("TTS connection test failed: %s", result.reason)
        return result.ok

    def service_info(self) -> Dict[str, Any]:
        return {
            "backend": "http",
            "url": self.url,
            "voice": self.voice,
            "speed": self.speed,
            "format": self.audio_format.upper(),
        }
