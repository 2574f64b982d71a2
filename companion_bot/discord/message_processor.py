from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import discord

from ..context.models import MessageAuthor, MessageChannel, MessageGuild, MessageType, ProcessedMessage
from .common import preview

logger = logging.getLogger("companion_bot")

COMMAND_PREFIXES: tuple[str, ...] = ("!", "/", "$", "?")

_USER_MENTION = re.compile(r"<@!?\d+>")
_ROLE_MENTION = re.compile(r"<@&\d+>")
_CHANNEL_MENTION = re.compile(r"<#\d+>")
_CUSTOM_EMOJI = re.compile(r"<a?:\w+:\d+>")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class ParsedCommand:
    name: str
    args: tuple[str, ...]
    prefix: str


def clean_message_content(content: str) -> str:
    text = _USER_MENTION.sub("@user", content or "")
    text = _ROLE_MENTION.sub("@role", text)
    text = _CHANNEL_MENTION.sub("#channel", text)
    text = _CUSTOM_EMOJI.sub(":emoji:", text)
    return _WHITESPACE.sub(" ", text).strip()


def _prefixes(extra: Optional[str]) -> tuple[str, ...]:
    if extra and extra not in COMMAND_PREFIXES:
        # Longest first so "!!" wins over "!".
        return tuple(sorted((extra, *COMMAND_PREFIXES), key=len, reverse=True))
    return COMMAND_PREFIXES


def is_command(content: str, extra_prefix: Optional[str] = None) -> bool:
    trimmed = (content or "").strip()
    return any(trimmed.startswith(prefix) for prefix in _prefixes(extra_prefix))


def extract_command(content: str, extra_prefix: Optional[str] = None) -> Optional[ParsedCommand]:
    trimmed = (content or "").strip()
    for prefix in _prefixes(extra_prefix):
        if not trimmed.startswith(prefix):
            continue
        parts = trimmed[len(prefix) :].split()
        if not parts:
            return ParsedCommand("", (), prefix)
        return ParsedCommand(parts[0].lower(), tuple(parts[1:]), prefix)
    return None


def classify_message(
    content: str,
    *,
    mentions_bot: bool,
    is_reply: bool,
    extra_prefix: Optional[str] = None,
) -> MessageType:
    if is_command(content, extra_prefix):
        return "command"
    if mentions_bot or is_reply:
        return "mention"
    return "regular"


def _channel_type(channel: object) -> str:
    if isinstance(channel, discord.DMChannel):
        return "dm"
    if isinstance(channel, discord.Thread):
        return "thread"
    if isinstance(channel, discord.VoiceChannel):
        return "voice"
    return "text"


def guild_snapshot(guild: Any) -> MessageGuild:
    owner_id = getattr(guild, "owner_id", None)
    member_count = getattr(guild, "member_count", None)
    return MessageGuild(
        id=str(guild.id),
        name=getattr(guild, "name", None) or "Unknown",
        owner_id=str(owner_id) if owner_id is not None else None,
        member_count=int(member_count) if isinstance(member_count, int) else None,
    )


class MessageProcessor:
    """Converts gateway messages into platform-neutral `ProcessedMessage`s."""

    def __init__(self, bot_user_id: Optional[int] = None) -> None:
        self.bot_user_id = bot_user_id

    def process(self, message: discord.Message, *, command_prefix: Optional[str] = None) -> ProcessedMessage:
        mention_ids = tuple(str(user.id) for user in message.mentions)
        mentions_bot = self.bot_user_id is not None and str(self.bot_user_id) in mention_ids
        is_reply = message.reference is not None

        channel = message.channel
        guild = message.guild
        author = message.author
        return ProcessedMessage(
            id=str(message.id),
            content=message.content,
            clean_content=clean_message_content(message.content),
            author=MessageAuthor(
                id=str(author.id),
                username=author.name,
                display_name=getattr(author, "display_name", None),
                bot=bool(author.bot),
            ),
            channel=MessageChannel(
                id=str(channel.id),
                name=getattr(channel, "name", None) or "DM",
                type=_channel_type(channel),
            ),
            guild=guild_snapshot(guild) if guild is not None else None,
            timestamp=int(message.created_at.timestamp() * 1000),
            message_type=classify_message(
                message.content,
                mentions_bot=mentions_bot,
                is_reply=is_reply,
                extra_prefix=command_prefix,
            ),
            is_reply=is_reply,
            reply_to=str(message.reference.message_id) if is_reply and message.reference.message_id else None,
            mentions=mention_ids,
            attachment_urls=tuple(attachment.url for attachment in message.attachments),
        )

    @staticmethod
    def log_message(processed: ProcessedMessage) -> None:
        logger.info(
            "%s from %s in #%s: %s",
            processed.message_type.upper(),
            processed.author.username,
            processed.channel.name,
            preview(processed.content),
        )
        if processed.attachment_urls:
            logger.debug("Message %s has %s attachment(s)", processed.id, len(processed.attachment_urls))
        if processed.is_reply:
            logger.debug("Message %s replies to %s", processed.id, processed.reply_to)
