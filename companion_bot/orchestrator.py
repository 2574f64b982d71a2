from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from .context.assembler import ContextAssembler
from .context.listening import ListeningModeRegistry
from .context.models import MessageContext, ProcessedMessage
from .context.scoring import get_context_summary, should_respond
from .errors import ContextStoreError, ProviderError, ProviderTimeoutError
from .prompts.system import HISTORY_TURNS, build_system_prompt, build_turns
from .services.completion import CompletionProvider, CompletionResult, CompletionUsage

logger = logging.getLogger("companion_bot")

ReplyKind = Literal["skipped", "replied", "fallback", "failed"]

FALLBACK_RESPONSES = (
    "I'm having trouble thinking right now, but I'm here and listening! 🤖",
    "My AI brain is taking a quick break, but I appreciate you talking to me! 💭",
    "I'm experiencing some technical difficulties, but I'm still learning about everyone here! 🔧",
    "Sorry, I'm having a moment! But I'm always interested in what you have to say! ✨",
    "My circuits are a bit tangled right now, but I'm still here with you all! ⚡",
)


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True, slots=True)
class ReplyOutcome:
    kind: ReplyKind
    text: Optional[str] = None
    reason: Optional[str] = None
    context: Optional[MessageContext] = None
    result: Optional[CompletionResult] = None
    error: Optional[Exception] = None

    @property
    def should_send(self) -> bool:
        return self.kind in ("replied", "fallback") and bool(self.text)

    @property
    def usage(self) -> Optional[CompletionUsage]:
        return self.result.usage if self.result is not None else None


class CompletionOrchestrator:
    """Turns one classified message into a reply decision.

    Gating by listening mode, context assembly, relevance check, completion
    request and persistence of the assistant turn. Provider failures become
    a canned fallback reply that is never persisted; store failures produce
    no reply at all.
    """

    def __init__(
        self,
        assembler: ContextAssembler,
        registry: ListeningModeRegistry,
        provider: CompletionProvider,
        *,
        language: str = "English",
        history_turns: int = HISTORY_TURNS,
        rng: random.Random | None = None,
    ) -> None:
        self.assembler = assembler
        self.registry = registry
        self.provider = provider
        self.language = language
        self.history_turns = history_turns
        self._rng = rng or random.Random()
        self.counters: Dict[str, int] = {"replied": 0, "fallback": 0, "skipped": 0, "failed": 0}

    def _finish(self, outcome: ReplyOutcome) -> ReplyOutcome:
        self.counters[outcome.kind] += 1
        return outcome

    def fallback_text(self) -> str:
        return self._rng.choice(FALLBACK_RESPONSES)

    async def handle(self, message: ProcessedMessage) -> ReplyOutcome:
        channel_id = message.channel.id
        eligibility = self.registry.eligibility(channel_id, message)
        if eligibility == "never":
            if message.message_type == "command":
                reason = "command"
            else:
                reason = f"listening mode {self.registry.get_mode(channel_id).mode}"
            return self._finish(ReplyOutcome("skipped", reason=reason))

        assembly = await self.assembler.build(message)
        if assembly.context is None:
            return self._finish(ReplyOutcome("failed", reason="context store unavailable", error=assembly.error))
        context = assembly.context

        if eligibility == "needs-scoring":
            threshold = self.registry.threshold_for(channel_id)
            if not should_respond(message, context.relevance_score, threshold):
                logger.info(
                    "Message relevance too low (%s%% <= %s%%), skipping reply",
                    round(context.relevance_score * 100),
                    round(threshold * 100),
                )
                return self._finish(ReplyOutcome("skipped", reason="low relevance", context=context))

        system_prompt = build_system_prompt(context, language=self.language)
        turns = build_turns(context, window=self.history_turns)
        try:
            result = await self.provider.complete(system_prompt, turns)
        except ProviderTimeoutError as exc:
            logger.warning("Completion timed out for message %s: %s", message.id, exc)
            return self._fallback(context, exc)
        except ProviderError as exc:
            logger.warning("Completion failed for message %s: %s", message.id, exc)
            return self._fallback(context, exc)

        text = result.text.strip()
        if not text:
            logger.warning("Completion for message %s came back empty", message.id)
            return self._fallback(context, ProviderError("Empty completion"))

        try:
            await self.assembler.record_assistant_turn(channel_id, text)
        except ContextStoreError as exc:
            logger.error("Could not persist assistant turn in channel %s: %s", channel_id, exc)

        self._log_interaction(context, result, text)
        return self._finish(ReplyOutcome("replied", text=text, context=context, result=result))

    def _fallback(self, context: MessageContext, error: Exception) -> ReplyOutcome:
        return self._finish(
            ReplyOutcome(
                "fallback",
                text=self.fallback_text(),
                reason=str(error) or type(error).__name__,
                context=context,
                error=error,
            )
        )

    def _log_interaction(self, context: MessageContext, result: CompletionResult, text: str) -> None:
        message = context.message
        logger.info(
            "[msg.user] %s in #%s: %s",
            message.author.username,
            message.channel.name,
            _preview(message.clean_content),
        )
        logger.info("[msg.bot] %s", _preview(text))
        logger.info("[msg.context] %s", get_context_summary(context))
        if result.usage is not None:
            logger.info(
                "[msg.tokens] %s (%s prompt + %s completion)",
                result.usage.total_tokens,
                result.usage.prompt_tokens,
                result.usage.completion_tokens,
            )
        logger.info("[msg.model] %s finish=%s latency=%sms", result.model, result.finish_reason, result.latency_ms)

    async def test_connection(self) -> bool:
        return await self.provider.test_connection()

    def stats(self) -> Dict[str, Any]:
        return {"model": self.provider.model_info(), **self.counters}
