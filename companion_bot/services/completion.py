from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

RETRIABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


@dataclass(frozen=True, slots=True)
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True, slots=True)
class CompletionResult:
    text: str
    model: str
    finish_reason: str = "unknown"
    usage: Optional[CompletionUsage] = None
    latency_ms: int = 0


class CompletionProvider(Protocol):
    """Chat completion backend.

    `turns` are `{"role": "user" | "assistant", "content": ...}` dicts in
    chronological order. Failures raise `ProviderError`; timeouts raise
    `ProviderTimeoutError`.
    """

    model: str

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def complete(self, system_prompt: str, turns: List[Dict[str, str]]) -> CompletionResult: ...

    async def test_connection(self) -> bool: ...

    def model_info(self) -> Dict[str, object]: ...


def backoff_delay(attempt: int, jitter: float) -> float:
    return min(4.0, 0.35 * attempt + jitter * 0.2)


def token_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(value.strip()))
        except ValueError:
            return 0
    return 0


def usage_from(raw: object, prompt_key: str, completion_key: str, total_key: str) -> Optional[CompletionUsage]:
    if not isinstance(raw, dict):
        return None
    return CompletionUsage(
        prompt_tokens=token_count(raw.get(prompt_key)),
        completion_tokens=token_count(raw.get(completion_key)),
        total_tokens=token_count(raw.get(total_key)),
    )
