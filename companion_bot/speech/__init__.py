from .audio_files import AudioFile, AudioFileManager
from .pipeline import SpeechPipeline
from .playback import GuildAudioPlayer, GuildPlaybackWorker, VoicePlaybackManager
from .results import PlaybackResult, SpeechResult, SynthesisResult

__all__ = [
    "AudioFile",
    "AudioFileManager",
    "GuildAudioPlayer",
    "GuildPlaybackWorker",
    "PlaybackResult",
    "SpeechPipeline",
    "SpeechResult",
    "SynthesisResult",
    "VoicePlaybackManager",
]
