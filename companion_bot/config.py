from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Set

from dotenv import load_dotenv

from .context.listening import LISTENING_MODES
from .services.tts_client import AUDIO_FORMATS


load_dotenv()

_PLACEHOLDER_PREFIX = "put_your_"


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # .env files saved with a BOM carry it on the first key name.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_id_set(name: str, aliases: tuple[str, ...] = ()) -> Set[str]:
    """Comma-separated Discord snowflakes; anything non-numeric is skipped."""
    raw = (_env_lookup(name, aliases) or "").strip()
    return {chunk.strip() for chunk in raw.split(",") if chunk.strip().isdigit()}


def _env_optional_id(name: str, aliases: tuple[str, ...] = ()) -> Optional[str]:
    raw = (_env_lookup(name, aliases) or "").strip()
    return raw if raw.isdigit() else None


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in {'"', "'"}:
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _is_placeholder(value: str) -> bool:
    return value.strip().lower().startswith(_PLACEHOLDER_PREFIX)


@dataclass(slots=True)
class Settings:
    discord_token: str
    command_prefix: str
    discord_message_content_intent: bool
    discord_members_intent: bool
    listen_channel_ids: Set[str]
    ignored_channel_ids: Set[str]
    voice_channel_id: Optional[str]
    preferred_response_language: str

    llm_provider: str
    llm_timeout_seconds: int
    openai_api_key: str
    openai_base_url: str
    openai_model: str
    openai_max_tokens: int
    openai_temperature: float
    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_temperature: float
    gemini_max_output_tokens: int

    memory_backend: str
    sqlite_path: Path
    memory_postgres_dsn: str
    history_limit: int
    default_listening_mode: str
    default_relevance_threshold: float

    voice_enabled: bool
    tts_backend: str
    tts_url: str
    tts_token: str
    tts_voice: str
    tts_speed: str
    tts_format: str
    tts_timeout_seconds: int
    edge_tts_voice: str
    audio_dir: Path
    voice_connect_timeout_seconds: float
    voice_playback_timeout_seconds: float
    voice_queue_size: int

    retention_days: int
    audio_retention_hours: float
    maintenance_interval_seconds: int

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            discord_members_intent=_env_bool("DISCORD_MEMBERS_INTENT", False),
            listen_channel_ids=_env_id_set("LISTEN_CHANNEL_IDS", aliases=("LISTEN_CHANNEL_ID",)),
            ignored_channel_ids=_env_id_set("IGNORED_CHANNEL_IDS", aliases=("IGNORED_CHANNELS",)),
            voice_channel_id=_env_optional_id("VOICE_CHANNEL_ID"),
            preferred_response_language=_env_str("PREFERRED_RESPONSE_LANGUAGE", "English"),
            llm_provider=_env_str("LLM_PROVIDER", "openai").lower(),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 45),
            openai_api_key=_env_str("OPENAI_API_KEY", ""),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_model=_env_str("OPENAI_MODEL", "gpt-4.1-mini"),
            openai_max_tokens=_env_int("OPENAI_MAX_TOKENS", 500),
            openai_temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.7),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 500),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion_bot.db")).expanduser(),
            memory_postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", "", aliases=("DATABASE_URL",)),
            history_limit=_env_int("HISTORY_LIMIT", 20),
            default_listening_mode=_env_str("DEFAULT_LISTENING_MODE", "smart-listening").lower(),
            default_relevance_threshold=_env_float("DEFAULT_RELEVANCE_THRESHOLD", 0.6),
            voice_enabled=_env_bool("VOICE_ENABLED", True),
            tts_backend=_env_str("TTS_BACKEND", "http").lower(),
            tts_url=_env_str("TTS_URL", "https://viettelai.vn/tts/speech_synthesis"),
            tts_token=_env_str("TTS_TOKEN", "", aliases=("VIETTEL_TTS_TOKEN",)),
            tts_voice=_env_str("TTS_VOICE", "hn-quynhanh"),
            tts_speed=_env_str("TTS_SPEED", "1.0"),
            tts_format=_env_str("TTS_FORMAT", "wav").lower(),
            tts_timeout_seconds=_env_int("TTS_TIMEOUT_SECONDS", 30),
            edge_tts_voice=_env_str("EDGE_TTS_VOICE", "en-US-AriaNeural"),
            audio_dir=Path(_env_str("AUDIO_DIR", "./data/audio")).expanduser(),
            voice_connect_timeout_seconds=_env_float("VOICE_CONNECT_TIMEOUT_SECONDS", 30.0),
            voice_playback_timeout_seconds=_env_float("VOICE_PLAYBACK_TIMEOUT_SECONDS", 30.0),
            voice_queue_size=_env_int("VOICE_QUEUE_SIZE", 1),
            retention_days=_env_int("RETENTION_DAYS", 30),
            audio_retention_hours=_env_float("AUDIO_RETENTION_HOURS", 24.0),
            maintenance_interval_seconds=_env_int("MAINTENANCE_INTERVAL_SECONDS", 3600),
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if _is_placeholder(self.discord_token):
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.command_prefix.strip() or len(self.command_prefix) > 5 or " " in self.command_prefix:
            raise ValueError("DISCORD_COMMAND_PREFIX must be 1-5 characters without spaces")

        if self.llm_provider == "openai":
            if not self.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
            if _is_placeholder(self.openai_api_key):
                raise ValueError("OPENAI_API_KEY is still placeholder")
            if self.openai_max_tokens < 16:
                raise ValueError("OPENAI_MAX_TOKENS must be >= 16")
            if not 0.0 <= self.openai_temperature <= 2.0:
                raise ValueError("OPENAI_TEMPERATURE must be in [0, 2]")
        elif self.llm_provider == "gemini":
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when LLM_PROVIDER=gemini")
            if _is_placeholder(self.gemini_api_key):
                raise ValueError("GEMINI_API_KEY is still placeholder")
            if self.gemini_max_output_tokens < 0:
                raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        else:
            raise ValueError("LLM_PROVIDER must be 'openai' or 'gemini'")
        if self.llm_timeout_seconds < 5:
            raise ValueError("LLM_TIMEOUT_SECONDS must be >= 5")

        if self.memory_backend not in {"sqlite", "postgres", "memory"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite', 'postgres' or 'memory'")
        if self.memory_backend == "postgres" and not self.memory_postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")
        if not 1 <= self.history_limit <= 50:
            raise ValueError("HISTORY_LIMIT must be in [1, 50]")
        if self.default_listening_mode not in LISTENING_MODES:
            raise ValueError(f"DEFAULT_LISTENING_MODE must be one of: {', '.join(LISTENING_MODES)}")
        if not 0.0 <= self.default_relevance_threshold <= 1.0:
            raise ValueError("DEFAULT_RELEVANCE_THRESHOLD must be in [0, 1]")

        if self.voice_enabled:
            if self.tts_backend not in {"http", "edge"}:
                raise ValueError("TTS_BACKEND must be 'http' or 'edge'")
            if self.tts_backend == "http":
                if not self.tts_token:
                    raise ValueError("TTS_TOKEN is required when VOICE_ENABLED=1 and TTS_BACKEND=http")
                if not self.tts_url:
                    raise ValueError("TTS_URL cannot be empty")
                if self.tts_format not in AUDIO_FORMATS:
                    raise ValueError("TTS_FORMAT must be 'wav' or 'mp3'")
            if self.tts_timeout_seconds < 1:
                raise ValueError("TTS_TIMEOUT_SECONDS must be >= 1")
            if self.voice_connect_timeout_seconds <= 0:
                raise ValueError("VOICE_CONNECT_TIMEOUT_SECONDS must be > 0")
            if self.voice_playback_timeout_seconds <= 0:
                raise ValueError("VOICE_PLAYBACK_TIMEOUT_SECONDS must be > 0")
            if self.voice_queue_size < 0:
                raise ValueError("VOICE_QUEUE_SIZE must be >= 0")

        if self.retention_days < 1:
            raise ValueError("RETENTION_DAYS must be >= 1")
        if self.audio_retention_hours <= 0:
            raise ValueError("AUDIO_RETENTION_HOURS must be > 0")
        if self.maintenance_interval_seconds < 60:
            raise ValueError("MAINTENANCE_INTERVAL_SECONDS must be >= 60")
