from __future__ import annotations

from typing import Sequence

from .models import ChannelContext, HistoryEntry, MessageContext, ProcessedMessage, UserProfile
from .topics import extract_topics

BASE_SCORE = 0.5
MENTION_BONUS = 0.3
REPLY_BONUS = 0.2
QUESTION_BONUS = 0.2
RETURNING_USER_BONUS = 0.1
ACTIVE_CHANNEL_BONUS = 0.1
ACTIVE_CHANNEL_WINDOW_MS = 300_000
SHORT_MESSAGE_PENALTY = 0.2
SHORT_MESSAGE_CHARS = 10
SHARED_TOPIC_BONUS = 0.1


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calculate_relevance_score(
    message: ProcessedMessage,
    profile: UserProfile,
    channel: ChannelContext,
    *,
    now_ms: int,
) -> float:
    """Heuristic estimate in [0, 1] of how warranted an automatic reply is.

    Pure: reads the profile and channel state as they were before this
    message was recorded.
    """
    score = BASE_SCORE
    if message.message_type == "mention":
        score += MENTION_BONUS
    if message.is_reply:
        score += REPLY_BONUS
    if "?" in message.clean_content:
        score += QUESTION_BONUS
    if profile.interaction_count > 0:
        score += RETURNING_USER_BONUS
    if now_ms - channel.last_activity < ACTIVE_CHANNEL_WINDOW_MS:
        score += ACTIVE_CHANNEL_BONUS
    if len(message.clean_content) < SHORT_MESSAGE_CHARS:
        score -= SHORT_MESSAGE_PENALTY

    known = set(profile.recent_topics) | set(channel.recent_topics)
    shared = [topic for topic in extract_topics(message.clean_content) if topic in known]
    score += SHARED_TOPIC_BONUS * len(shared)
    return _clamp(score, 0.0, 1.0)


def time_of_day_cue(hour: int) -> str:
    if hour < 6 or hour > 22:
        return "late-night"
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def identify_contextual_cues(
    message: ProcessedMessage,
    history: Sequence[HistoryEntry],
    *,
    hour: int,
) -> list[str]:
    """Tags describing the situation around a message.

    `history` is chronological (oldest first) and excludes the message itself.
    """
    cues = [time_of_day_cue(hour)]

    if message.message_type == "mention":
        cues.append("mentioned")
    if message.is_reply:
        cues.append("reply")

    content = message.clean_content.lower()
    if "help" in content or "?" in content:
        cues.append("needs-help")
    if "thank" in content:
        cues.append("grateful")
    if "hello" in content or "hi" in content:
        cues.append("greeting")
    if "bye" in content:
        cues.append("farewell")

    if not history:
        cues.append("first-interaction")
    elif len(history) > 5:
        cues.append("ongoing-conversation")

    username = message.author.username
    if any(entry.author == username for entry in history[-3:]):
        cues.append("continuing-user")
    return cues


def analyze_personality_traits(text: str) -> list[str]:
    content = (text or "").lower()
    traits: list[str] = []
    if "lol" in content or "haha" in content or "\U0001f602" in content:
        traits.append("humorous")
    if "?" in content and len(content) > 20:
        traits.append("inquisitive")
    if "please" in content or "thank" in content:
        traits.append("polite")
    if "code" in content or "programming" in content or "tech" in content:
        traits.append("technical")
    return traits


def should_respond(message: ProcessedMessage, relevance_score: float, threshold: float) -> bool:
    if message.is_direct:
        return True
    return relevance_score > threshold


def get_context_summary(context: MessageContext) -> str:
    """One-line digest of a context snapshot, used in logs and the system prompt."""
    profile = context.user_profile
    parts = [f"User {profile.username} ({profile.interaction_count} interactions)"]
    if profile.personality:
        parts.append(f"Personality: {', '.join(profile.personality)}")
    if profile.recent_topics:
        parts.append(f"Recent interests: {', '.join(profile.recent_topics[-5:])}")

    channel_topics = context.channel_context.recent_topics
    if channel_topics:
        parts.append(f"Channel topics: {', '.join(channel_topics[-3:])}")

    server = context.server_context
    if server is not None and server.recent_events:
        parts.append(f"Server events: {', '.join(server.recent_events[:3])}")

    if context.contextual_cues:
        parts.append(f"Context: {', '.join(context.contextual_cues)}")
    parts.append(f"Relevance: {round(context.relevance_score * 100)}%")
    return " | ".join(parts)
