from __future__ import annotations

from typing import Any, Dict, List

from ..context.models import MessageContext
from .json_loader import load_prompt_json

HISTORY_TURNS = 10

_DEFAULTS: dict[str, Any] = {
    "persona_intro": (
        'You are an AI companion in the Discord server "{server_name}". Your main goal is to learn about '
        "the members of the server and give helpful replies that fit the conversation."
    ),
    "persona_traits": [
        "Friendly and engaging personality",
        "Remember and refer back to earlier conversations when it fits",
        "Ask follow-up questions to learn more about the user",
        "Offer useful information and help",
        "Keep replies short but meaningful (usually 1-3 sentences)",
        "Use Discord-appropriate language and emoji when it fits",
        "Be respectful and inclusive toward everyone",
    ],
    "language_rule_template": "Answer in {language} unless the user explicitly asks for another language.",
    "current_context_header": "Current context:",
    "current_context_lines": [
        "- Server: {server_name}",
        "- Channel: #{channel_name}",
        "- User: {username}",
    ],
    "known_user_template": "What you know about {username}: {user_context}",
    "first_interaction_template": (
        "This is your first interaction with {username}. Try to learn something about them!"
    ),
    "closing_note": (
        "Remember: your replies help build this user's profile for future conversations. "
        "Pay attention to their interests, personality and preferences."
    ),
    "unknown_server_name": "Direct Messages",
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("system.json", _DEFAULTS)


def build_user_context(context: MessageContext) -> str:
    """Compact digest of what is known about the author, or "" for a newcomer."""
    profile = context.user_profile
    # The snapshot already counts the current message.
    if profile.interaction_count <= 1 and not context.conversation_history:
        return ""
    parts: list[str] = []
    if profile.personality:
        parts.append(f"Personality: {', '.join(profile.personality)}")
    if profile.recent_topics:
        parts.append(f"Interests: {', '.join(profile.recent_topics[-5:])}")
    parts.append(f"Interactions: {profile.interaction_count}")
    if context.contextual_cues:
        parts.append(f"Context: {', '.join(context.contextual_cues)}")
    return " | ".join(parts)


def build_system_prompt(context: MessageContext, *, language: str = "English") -> str:
    cfg = _cfg()
    message = context.message
    server_name = message.guild.name if message.guild is not None else str(cfg["unknown_server_name"])
    values = {
        "server_name": server_name,
        "channel_name": message.channel.name,
        "username": message.author.username,
        "language": language,
    }

    traits = [str(item).strip() for item in cfg.get("persona_traits") or [] if str(item).strip()]
    lines = [str(cfg["persona_intro"]).format(**values), "", "Key traits:"]
    lines.extend(f"- {trait}" for trait in traits)
    lines.append(f"- {str(cfg['language_rule_template']).format(**values)}")
    lines.extend(["", str(cfg["current_context_header"])])
    lines.extend(str(line).format(**values) for line in cfg.get("current_context_lines") or [])
    lines.append("")

    user_context = build_user_context(context)
    if user_context:
        lines.append(str(cfg["known_user_template"]).format(user_context=user_context, **values))
    else:
        lines.append(str(cfg["first_interaction_template"]).format(**values))
    lines.extend(["", str(cfg["closing_note"])])
    return "\n".join(lines)


def build_turns(context: MessageContext, *, window: int = HISTORY_TURNS) -> List[Dict[str, str]]:
    """Last `window` history turns plus the current message, oldest first."""
    turns: List[Dict[str, str]] = []
    recent = context.conversation_history[-window:] if window > 0 else ()
    for entry in recent:
        if entry.role == "user":
            turns.append({"role": "user", "content": f"{entry.author or 'User'}: {entry.content}"})
        else:
            turns.append({"role": "assistant", "content": entry.content})
    message = context.message
    turns.append({"role": "user", "content": f"{message.author.username}: {message.clean_content}"})
    return turns
