from __future__ import annotations

import asyncio
import contextlib
import logging

from .config import Settings
from .discord.client import CompanionDiscordBot
from .memory.factory import build_memory_store
from .services.factory import build_completion_provider, build_speech_synthesizer
from .speech.audio_files import AudioFileManager

logger = logging.getLogger("companion_bot")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.WARNING)
    logging.getLogger("discord.voice_state").setLevel(logging.WARNING)
    logging.getLogger("discord.player").setLevel(logging.WARNING)


def build_bot(settings: Settings) -> CompanionDiscordBot:
    store = build_memory_store(settings)
    provider = build_completion_provider(settings)
    synthesizer = build_speech_synthesizer(settings) if settings.voice_enabled else None
    return CompanionDiscordBot(
        settings=settings,
        store=store,
        provider=provider,
        synthesizer=synthesizer,
        audio_files=AudioFileManager(settings.audio_dir),
    )


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    logger.info(
        "Starting companion bot (llm=%s memory=%s voice=%s)",
        settings.llm_provider,
        settings.memory_backend,
        settings.tts_backend if settings.voice_enabled else "off",
    )
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
