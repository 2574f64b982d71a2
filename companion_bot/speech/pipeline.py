from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from .audio_files import AudioFileManager
from .playback import VoicePlaybackManager
from .results import SpeechResult

if TYPE_CHECKING:
    from ..services.tts_client import SpeechSynthesizer

logger = logging.getLogger("companion_bot")

MAX_TTS_CHARS = 450


class SpeechPipeline:
    """Synthesis, temp file, guild playback and temp cleanup for one reply."""

    def __init__(
        self,
        synthesizer: "SpeechSynthesizer",
        audio_files: AudioFileManager,
        playback: VoicePlaybackManager,
        *,
        enabled: bool = True,
        max_chars: int = MAX_TTS_CHARS,
    ) -> None:
        self.synthesizer = synthesizer
        self.audio_files = audio_files
        self.playback = playback
        self.enabled = enabled
        self.max_chars = max(16, int(max_chars))

    def _prepare_text(self, text: str) -> str:
        cleaned = " ".join((text or "").split())
        if len(cleaned) > self.max_chars:
            cleaned = cleaned[: self.max_chars - 3] + "..."
        return cleaned

    async def speak(self, guild_id: str, text: str, *, voice_channel_id: Optional[str] = None) -> SpeechResult:
        if not self.enabled:
            return SpeechResult("disabled", "Voice output is disabled")

        synthesis = await self.synthesizer.synthesize(self._prepare_text(text))
        if not synthesis.ok:
            logger.warning("TTS conversion failed for guild=%s: %s", guild_id, synthesis.reason)
            return SpeechResult("synthesis_failed", synthesis.reason, synthesis=synthesis)

        try:
            temp_path = await self.audio_files.create_temp_file(synthesis.audio, synthesis.audio_format)
        except OSError as exc:
            logger.warning("Could not write temp audio for guild=%s: %s", guild_id, exc)
            return SpeechResult("playback_failed", f"Could not write temp audio: {exc}", synthesis=synthesis)

        try:
            playback = await self.playback.play_file(guild_id, temp_path, channel_id=voice_channel_id)
        finally:
            self.audio_files.delete_temp_file(temp_path)

        if not playback.ok:
            logger.warning("Playback failed for guild=%s: %s %s", guild_id, playback.kind, playback.reason)
            return SpeechResult("playback_failed", playback.reason or playback.kind, synthesis=synthesis, playback=playback)
        logger.info("TTS audio played in guild=%s (%sms)", guild_id, playback.duration_ms)
        return SpeechResult("spoken", synthesis=synthesis, playback=playback)

    async def test_tts(self, text: str = "Hello! This is a text to speech test.") -> SpeechResult:
        """Synthesize and save a file without playing it."""
        synthesis = await self.synthesizer.synthesize(self._prepare_text(text))
        if not synthesis.ok:
            return SpeechResult("synthesis_failed", synthesis.reason, synthesis=synthesis)
        saved = await self.audio_files.save_audio_file(synthesis.audio, synthesis.audio_format, text)
        return SpeechResult("saved", synthesis=synthesis, audio_path=saved.path)

    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "service": self.synthesizer.service_info(),
            "audio": self.audio_files.stats(),
            "playback": self.playback.stats(),
        }
