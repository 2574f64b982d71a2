from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Dict, List

import aiohttp

from ..errors import ProviderError, ProviderTimeoutError
from .completion import RETRIABLE_STATUSES, CompletionResult, backoff_delay, usage_from

logger = logging.getLogger("companion_bot")


class OpenAIChatClient:
    """Chat Completions client for OpenAI and API-compatible servers."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        timeout_seconds: float = 45.0,
        temperature: float = 0.7,
        max_tokens: int = 500,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_tokens = int(max_tokens)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Any:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)
                    if response.status not in RETRIABLE_STATUSES:
                        raise ProviderError(f"OpenAI error {response.status}: {text[:500]}")
                    last_error = ProviderError(f"OpenAI retriable error {response.status}: {text[:500]}")
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(f"OpenAI request timed out after {self.timeout.total}s") from exc
            except ProviderError:
                raise
            except (aiohttp.ClientError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(backoff_delay(attempt, random.random()))

        raise ProviderError(f"OpenAI request failed after retries: {last_error}")

    @staticmethod
    def _extract_result(data: Any, *, fallback_model: str, latency_ms: int) -> CompletionResult:
        if not isinstance(data, dict):
            raise ProviderError(f"OpenAI response is not an object: {type(data).__name__}")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("OpenAI returned no choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise ProviderError("OpenAI choice is malformed")
        message = first.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("No content in OpenAI response")

        return CompletionResult(
            text=content.strip(),
            model=str(data.get("model") or fallback_model),
            finish_reason=str(first.get("finish_reason") or "unknown"),
            usage=usage_from(data.get("usage"), "prompt_tokens", "completion_tokens", "total_tokens"),
            latency_ms=latency_ms,
        )

    def _parse(self, data: Any, latency_ms: int) -> CompletionResult:
        try:
            return self._extract_result(data, fallback_model=self.model, latency_ms=latency_ms)
        except ProviderError:
            raise
        except (TypeError, ValueError, AttributeError, KeyError) as exc:
            raise ProviderError(f"Malformed OpenAI response: {exc}") from exc

    async def complete(self, system_prompt: str, turns: List[Dict[str, str]]) -> CompletionResult:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for turn in turns:
            content = str(turn.get("content", "")).strip()
            if content:
                messages.append({"role": str(turn.get("role", "user")), "content": content})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        started = time.perf_counter()
        data = await self._request(payload)
        latency_ms = int((time.perf_counter() - started) * 1000)
        return self._parse(data, latency_ms)

    async def test_connection(self) -> bool:
        try:
            data = await self._request(
                {
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": "You are a helpful assistant."},
                        {"role": "user", "content": 'Say "Hello, I am working!" in exactly those words.'},
                    ],
                    "max_tokens": 20,
                    "temperature": 0,
                },
                retries=1,
            )
            result = self._parse(data, 0)
        except ProviderError as exc:
            logger.warning("OpenAI connection test failed: %s", exc)
            return False
        if "Hello, I am working!" not in result.text:
            logger.warning("OpenAI connection test unexpected response: %s", result.text[:120])
            return False
        return True

    def model_info(self) -> Dict[str, object]:
        return {
            "provider": "openai",
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
