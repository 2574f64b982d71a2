from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from ..errors import ListeningModeError
from .models import ProcessedMessage

logger = logging.getLogger("companion_bot")

ListeningModeName = Literal["mentions-only", "smart-listening", "always-listen", "disabled"]
Eligibility = Literal["never", "eligible", "needs-scoring"]

LISTENING_MODES: tuple[str, ...] = ("mentions-only", "smart-listening", "always-listen", "disabled")
DEFAULT_MODE = "smart-listening"
DEFAULT_THRESHOLD = 0.6

MODE_DESCRIPTIONS = {
    "mentions-only": "Only replies when mentioned or replied to",
    "smart-listening": "Replies to relevant messages above the relevance threshold",
    "always-listen": "Considers every non-command message",
    "disabled": "Never replies to messages that are not mentions",
}


@dataclass(frozen=True, slots=True)
class ListeningMode:
    mode: str = DEFAULT_MODE
    threshold: float | None = None


@dataclass(frozen=True, slots=True)
class ListeningModeChange:
    ok: bool
    channel_id: str
    mode: ListeningMode
    previous: ListeningMode
    error: str = ""


def validate_listening_mode(mode: str, threshold: float | None = None) -> ListeningMode:
    name = str(mode or "").strip().lower()
    if name not in LISTENING_MODES:
        raise ListeningModeError(f"Unknown listening mode {mode!r}. Valid modes: {', '.join(LISTENING_MODES)}")
    if threshold is None:
        return ListeningMode(name, None)
    if name != "smart-listening":
        raise ListeningModeError("A threshold can only be set for smart-listening")
    try:
        value = float(threshold)
    except (TypeError, ValueError) as exc:
        raise ListeningModeError(f"Threshold must be a number, got {threshold!r}") from exc
    if not 0.0 <= value <= 1.0:
        raise ListeningModeError(f"Threshold must be between 0 and 1, got {value}")
    return ListeningMode(name, value)


class ListeningModeRegistry:
    """Per-channel listening policy, changed only through explicit admin calls."""

    def __init__(self, default_mode: str = DEFAULT_MODE, default_threshold: float = DEFAULT_THRESHOLD) -> None:
        self.default = validate_listening_mode(default_mode)
        if not 0.0 <= float(default_threshold) <= 1.0:
            raise ListeningModeError(f"Default threshold must be between 0 and 1, got {default_threshold}")
        self.default_threshold = float(default_threshold)
        self._modes: dict[str, ListeningMode] = {}

    def get_mode(self, channel_id: str) -> ListeningMode:
        return self._modes.get(str(channel_id), self.default)

    def threshold_for(self, channel_id: str) -> float:
        threshold = self.get_mode(channel_id).threshold
        return self.default_threshold if threshold is None else threshold

    def set_mode(self, channel_id: str, mode: str, threshold: float | None = None) -> ListeningModeChange:
        key = str(channel_id)
        previous = self.get_mode(key)
        try:
            new_mode = validate_listening_mode(mode, threshold)
        except ListeningModeError as exc:
            return ListeningModeChange(False, key, previous, previous, error=str(exc))
        self._modes[key] = new_mode
        logger.info("Listening mode for channel %s: %s -> %s", key, previous.mode, new_mode.mode)
        return ListeningModeChange(True, key, new_mode, previous)

    def reset(self, channel_id: str) -> None:
        self._modes.pop(str(channel_id), None)

    def eligibility(self, channel_id: str, message: ProcessedMessage) -> Eligibility:
        """Whether a message may be considered for a reply in this channel.

        Mentions and replies are always eligible. Otherwise the channel mode
        decides, with smart-listening deferring to the relevance scorer.
        """
        if message.message_type == "command":
            return "never"
        if message.is_direct:
            return "eligible"
        mode = self.get_mode(channel_id).mode
        if mode == "always-listen":
            return "eligible"
        if mode == "smart-listening":
            return "needs-scoring"
        return "never"

    def is_eligible(self, channel_id: str, message: ProcessedMessage) -> bool:
        return self.eligibility(channel_id, message) != "never"

    def snapshot(self) -> dict[str, ListeningMode]:
        return dict(self._modes)
