"""Google Gemini provider (Gemini API / AI Studio, API key auth)."""

import asyncio
import json
import logging
from typing import AsyncIterator

import httpx

from tutor_chat.ai.llm_base import LLMError, LLMProvider, LLMUsage

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GoogleGeminiProvider(LLMProvider):
    """Stream text from ``models/{model}:streamGenerateContent`` over SSE."""

    def __init__(
        self,
        api_key: str,
        model_id: str,
        *,
        timeout: float = 60.0,
        retries: int = 3,
    ) -> None:
        super().__init__()
        self.provider_id = "google"
        self.model_id = model_id
        self._api_key = api_key
        self._timeout = timeout
        self._retries = max(1, retries)

    def _build_stream_url(self) -> str:
        return f"{GEMINI_API_BASE}/models/{self.model_id}:streamGenerateContent?alt=sse"

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }

    def _capture_usage(self, usage_meta: dict) -> None:
        self.last_usage.input_tokens = usage_meta.get(
            "promptTokenCount", self.last_usage.input_tokens
        )
        self.last_usage.output_tokens = usage_meta.get(
            "candidatesTokenCount", self.last_usage.output_tokens
        )
        self.last_usage.usage_details = {"usageMetadata": usage_meta}

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        """Stream text chunks; retry throttling and server errors before the first byte."""
        self.last_usage = LLMUsage()
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_tokens},
        }

        backoff = 1
        yielded = False
        for attempt in range(self._retries):
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    async with client.stream(
                        "POST",
                        self._build_stream_url(),
                        json=payload,
                        headers=self._build_headers(),
                    ) as response:
                        if response.status_code == 429 or response.status_code >= 500:
                            if attempt < self._retries - 1:
                                logger.warning(
                                    "Gemini API returned %d, retrying in %ds",
                                    response.status_code,
                                    backoff,
                                )
                                await asyncio.sleep(backoff)
                                backoff *= 2
                                continue
                            raise LLMError(
                                f"Gemini API error {response.status_code} after {self._retries} attempts"
                            )

                        if response.status_code != 200:
                            body = await response.aread()
                            raise LLMError(
                                f"Gemini API error {response.status_code}: {body.decode(errors='replace')}"
                            )

                        async for line in response.aiter_lines():
                            if not line.startswith("data: "):
                                continue
                            try:
                                event = json.loads(line[6:])
                            except json.JSONDecodeError:
                                continue

                            usage_meta = event.get("usageMetadata")
                            if isinstance(usage_meta, dict):
                                self._capture_usage(usage_meta)

                            candidates = event.get("candidates", [])
                            if not candidates:
                                continue
                            parts = candidates[0].get("content", {}).get("parts", [])
                            for part in parts:
                                text = part.get("text", "")
                                if text:
                                    yielded = True
                                    yield text
                        return

            except httpx.TimeoutException:
                # A partially delivered stream cannot be replayed.
                if attempt < self._retries - 1 and not yielded:
                    logger.warning("Gemini API timeout, retrying in %ds", backoff)
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                raise LLMError("Gemini API timeout after retries")
            except LLMError:
                raise
            except Exception as exc:
                raise LLMError(f"Gemini API unexpected error: {exc}")
