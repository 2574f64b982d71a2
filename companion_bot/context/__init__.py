from .assembler import AssemblyResult, ContextAssembler, KeyedLocks
from .listening import ListeningMode, ListeningModeChange, ListeningModeRegistry
from .models import MessageContext, ProcessedMessage
from .scoring import calculate_relevance_score, get_context_summary, identify_contextual_cues
from .topics import extract_topics

__all__ = [
    "AssemblyResult",
    "ContextAssembler",
    "KeyedLocks",
    "ListeningMode",
    "ListeningModeChange",
    "ListeningModeRegistry",
    "MessageContext",
    "ProcessedMessage",
    "calculate_relevance_score",
    "extract_topics",
    "get_context_summary",
    "identify_contextual_cues",
]
