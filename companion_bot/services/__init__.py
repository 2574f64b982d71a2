from .completion import CompletionProvider, CompletionResult, CompletionUsage
from .factory import build_completion_provider, build_speech_synthesizer
from .tts_client import SpeechSynthesizer, TTSClient

__all__ = [
    "CompletionProvider",
    "CompletionResult",
    "CompletionUsage",
    "SpeechSynthesizer",
    "TTSClient",
    "build_completion_provider",
    "build_speech_synthesizer",
]
