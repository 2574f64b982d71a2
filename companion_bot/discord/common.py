from __future__ import annotations

import re

DISCORD_MESSAGE_LIMIT = 1900


def preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def chunk_text(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> list[str]:
    """Split on line boundaries so every part fits in one Discord message."""
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            parts.append(current)
            current = ""
        if len(line) <= limit:
            current = line
        else:
            parts.extend(line[i : i + limit] for i in range(0, len(line), limit))
    if current:
        parts.append(current)
    return parts


def parse_channel_id(raw: str | None) -> str | None:
    """Accept `<#123>`, `123` or None; anything else is rejected."""
    if raw is None:
        return None
    match = re.fullmatch(r"<#(\d+)>|(\d+)", raw.strip())
    if match is None:
        return None
    return match.group(1) or match.group(2)
