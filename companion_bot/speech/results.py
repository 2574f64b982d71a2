from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

SynthesisKind = Literal["ok", "invalid_input", "timeout", "http_error", "network_error"]
PlaybackKind = Literal["ok", "busy", "no_channel", "connect_timeout", "playback_timeout", "error"]
SpeechKind = Literal["spoken", "saved", "disabled", "synthesis_failed", "playback_failed"]


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    kind: SynthesisKind
    audio_format: str
    audio: bytes = b""
    reason: str = ""
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"

    @classmethod
    def success(cls, audio: bytes, audio_format: str) -> "SynthesisResult":
        return cls(kind="ok", audio_format=audio_format, audio=audio)

    @classmethod
    def failure(
        cls,
        kind: SynthesisKind,
        reason: str,
        audio_format: str,
        *,
        status: Optional[int] = None,
    ) -> "SynthesisResult":
        return cls(kind=kind, audio_format=audio_format, reason=reason, status=status)


@dataclass(frozen=True, slots=True)
class PlaybackResult:
    kind: PlaybackKind
    guild_id: str
    reason: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


@dataclass(frozen=True, slots=True)
class SpeechResult:
    kind: SpeechKind
    reason: str = ""
    synthesis: Optional[SynthesisResult] = None
    playback: Optional[PlaybackResult] = None
    audio_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.kind == "spoken"
