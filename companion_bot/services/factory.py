from __future__ import annotations

from typing import TYPE_CHECKING

from .completion import CompletionProvider
from .edge_tts_client import EdgeTTSClient
from .gemini_client import GeminiClient
from .openai_client import OpenAIChatClient
from .tts_client import SpeechSynthesizer, TTSClient

if TYPE_CHECKING:
    from ..config import Settings


def build_completion_provider(settings: "Settings") -> CompletionProvider:
    if settings.llm_provider == "openai":
        return OpenAIChatClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.llm_timeout_seconds,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            base_url=settings.openai_base_url,
        )
    if settings.llm_provider == "gemini":
        return GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.llm_timeout_seconds,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            base_url=settings.gemini_base_url,
        )
    raise ValueError("LLM_PROVIDER must be 'openai' or 'gemini'")


def build_speech_synthesizer(settings: "Settings") -> SpeechSynthesizer:
    if settings.tts_backend == "edge":
        return EdgeTTSClient(
            voice=settings.edge_tts_voice,
            speed=settings.tts_speed,
            timeout_seconds=settings.tts_timeout_seconds,
        )
    return TTSClient(
        url=settings.tts_url,
        token=settings.tts_token,
        voice=settings.tts_voice,
        speed=settings.tts_speed,
        audio_format=settings.tts_format,
        timeout_seconds=settings.tts_timeout_seconds,
    )
