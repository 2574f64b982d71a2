from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional, Sequence

MessageType = Literal["command", "mention", "regular"]
ConversationRole = Literal["user", "assistant"]
ConversationTone = Literal["casual", "serious", "technical", "fun"]

USER_PERSONALITY_CAP = 10
USER_RECENT_TOPICS_CAP = 20
CHANNEL_RECENT_TOPICS_CAP = 15
CHANNEL_ACTIVE_USERS_CAP = 20
SERVER_RECENT_EVENTS_CAP = 10


def now_ms() -> int:
    return int(time.time() * 1000)


def merge_bounded(existing: Sequence[str], incoming: Iterable[str], cap: int) -> list[str]:
    """Append unseen items and keep only the newest `cap` entries (oldest dropped first)."""
    merged = list(existing)
    for item in incoming:
        if item not in merged:
            merged.append(item)
    if cap <= 0:
        return []
    return merged[-cap:]


def push_front_bounded(existing: Sequence[str], item: str, cap: int) -> list[str]:
    if cap <= 0:
        return []
    return [item, *existing][:cap]


@dataclass(slots=True)
class MessageAuthor:
    id: str
    username: str
    display_name: str | None = None
    bot: bool = False


@dataclass(slots=True)
class MessageChannel:
    id: str
    name: str
    type: str = "text"


@dataclass(slots=True)
class MessageGuild:
    id: str
    name: str
    owner_id: str | None = None
    member_count: int | None = None


@dataclass(slots=True)
class ProcessedMessage:
    id: str
    content: str
    clean_content: str
    author: MessageAuthor
    channel: MessageChannel
    guild: MessageGuild | None
    timestamp: int
    message_type: MessageType = "regular"
    is_reply: bool = False
    reply_to: str | None = None
    mentions: tuple[str, ...] = ()
    attachment_urls: tuple[str, ...] = ()

    @property
    def is_direct(self) -> bool:
        return self.message_type == "mention" or self.is_reply


@dataclass(slots=True)
class UserProfile:
    user_id: str
    username: str
    display_name: str | None = None
    interests: list[str] = field(default_factory=list)
    personality: list[str] = field(default_factory=list)
    recent_topics: list[str] = field(default_factory=list)
    interaction_count: int = 0
    last_seen: int = field(default_factory=now_ms)
    preferred_response_style: str | None = None
    timezone: str | None = None
    language: str | None = None
    bio: str | None = None
    goals: str | None = None
    preferences: str | None = None
    notes: str | None = None


@dataclass(slots=True)
class ChannelContext:
    channel_id: str
    channel_name: str
    channel_type: str = "text"
    recent_topics: list[str] = field(default_factory=list)
    active_users: list[str] = field(default_factory=list)
    conversation_tone: ConversationTone = "casual"
    last_activity: int = field(default_factory=now_ms)


@dataclass(slots=True)
class ServerContext:
    server_id: str
    server_name: str
    owner_id: str | None = None
    member_count: int = 0
    recent_events: list[str] = field(default_factory=list)
    listening_channels: list[str] = field(default_factory=list)
    ignoring_channels: list[str] = field(default_factory=list)
    command_prefix: str = "!"
    last_activity: int = field(default_factory=now_ms)


@dataclass(slots=True)
class ConversationMessage:
    channel_id: str
    user_id: Optional[str]
    role: ConversationRole
    content: str
    timestamp: int
    author: str | None = None
    relevance_score: float = 0.0
    id: int | None = None

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Unknown conversation role: {self.role!r}")
        if (self.user_id is None) != (self.role == "assistant"):
            raise ValueError("ConversationMessage.user_id must be None exactly for assistant turns")


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    role: ConversationRole
    content: str
    timestamp: int
    author: str | None = None
    topics: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MessageContext:
    """Immutable snapshot used to build one completion request."""

    message: ProcessedMessage
    user_profile: UserProfile
    channel_context: ChannelContext
    server_context: ServerContext | None
    conversation_history: tuple[HistoryEntry, ...]
    relevance_score: float
    contextual_cues: tuple[str, ...]
