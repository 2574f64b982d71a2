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


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

    @staticmethod
    def _map_turns(system_prompt: str, turns: List[Dict[str, str]]) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = []
        for turn in turns:
            content = str(turn.get("content", "")).strip()
            if not content:
                continue
            role = str(turn.get("role", "")).strip().lower()
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_prompt.strip():
            payload["systemInstruction"] = {"parts": [{"text": system_prompt.strip()}]}
        return payload

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Any:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    if response.status not in RETRIABLE_STATUSES:
                        raise ProviderError(f"Gemini error {response.status}: {text[:500]}")
                    last_error = ProviderError(f"Gemini retriable error {response.status}: {text[:500]}")
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(f"Gemini request timed out after {self.timeout.total}s") from exc
            except ProviderError:
                raise
            except (aiohttp.ClientError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(backoff_delay(attempt, random.random()))

        raise ProviderError(f"Gemini request failed after retries: {last_error}")

    @staticmethod
    def _extract_text(data: Any) -> tuple[str, str]:
        if not isinstance(data, dict):
            raise ProviderError(f"Gemini response is not an object: {type(data).__name__}")
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            prompt_feedback = data.get("promptFeedback")
            block_reason = prompt_feedback.get("blockReason") if isinstance(prompt_feedback, dict) else None
            if block_reason:
                raise ProviderError(f"Gemini blocked response: {block_reason}")
            raise ProviderError("Gemini returned no candidates")

        first = candidates[0]
        if not isinstance(first, dict):
            raise ProviderError("Gemini candidate is malformed")
        content = first.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        chunks: List[str] = []

        for part in parts if isinstance(parts, list) else []:
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        finish_reason = str(first.get("finishReason") or "unknown")
        if joined:
            return joined, finish_reason
        raise ProviderError(f"Gemini empty response (finishReason={finish_reason})")

    def _parse(self, data: Any, latency_ms: int) -> CompletionResult:
        try:
            text, finish_reason = self._extract_text(data)
            return CompletionResult(
                text=text,
                model=str(data.get("modelVersion") or self.model),
                finish_reason=finish_reason,
                usage=usage_from(
                    data.get("usageMetadata"), "promptTokenCount", "candidatesTokenCount", "totalTokenCount"
                ),
                latency_ms=latency_ms,
            )
        except ProviderError:
            raise
        except (TypeError, ValueError, AttributeError, KeyError) as exc:
            raise ProviderError(f"Malformed Gemini response: {exc}") from exc

    async def complete(self, system_prompt: str, turns: List[Dict[str, str]]) -> CompletionResult:
        payload = self._map_turns(system_prompt, turns)
        generation_config: Dict[str, Any] = {"temperature": self.temperature}
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        payload["generationConfig"] = generation_config

        started = time.perf_counter()
        data = await self._request(payload)
        return self._parse(data, int((time.perf_counter() - started) * 1000))

    async def test_connection(self) -> bool:
        try:
            result = await self.complete(
                "You are a helpful assistant.",
                [{"role": "user", "content": 'Say "Hello, I am working!" in exactly those words.'}],
            )
        except ProviderError as exc:
            logger.warning("Gemini connection test failed: %s", exc)
            return False
        return "hello" in result.text.lower()

    def model_info(self) -> Dict[str, object]:
        return {
            "provider": "gemini",
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
        }
