"""Gemini API provider tests."""

from __future__ import annotations

import json

import httpx
import pytest

from tutor_chat.ai.llm_base import LLMError
from tutor_chat.ai.llm_google import GoogleGeminiProvider


class _FakeStreamResponse:
    def __init__(self, *, status_code: int, lines: list[str], body: str = "", fail_after: int | None = None) -> None:
        self.status_code = status_code
        self._lines = lines
        self._body = body
        self._fail_after = fail_after

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def aiter_lines(self):
        for i, line in enumerate(self._lines):
            if self._fail_after is not None and i >= self._fail_after:
                raise httpx.ReadTimeout("stalled")
            yield line

    async def aread(self) -> bytes:
        return self._body.encode()


def _data(text: str, usage: dict | None = None) -> str:
    event: dict = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    if usage:
        event["usageMetadata"] = usage
    return "data: " + json.dumps(event)


class _FakeAsyncClient:
    """Serves queued responses, one per ``stream`` call."""

    responses: list[_FakeStreamResponse] = []
    calls: list[dict] = []

    def __init__(self, *args, **kwargs) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def stream(self, method, url, json=None, headers=None):
        _FakeAsyncClient.calls.append(
            {"method": method, "url": url, "json": json, "headers": headers}
        )
        return _FakeAsyncClient.responses.pop(0)


@pytest.fixture
def fake_client(monkeypatch):
    _FakeAsyncClient.responses = []
    _FakeAsyncClient.calls = []
    monkeypatch.setattr("tutor_chat.ai.llm_google.httpx.AsyncClient", _FakeAsyncClient)

    async def _no_sleep(_seconds):
        return None

    monkeypatch.setattr("tutor_chat.ai.llm_google.asyncio.sleep", _no_sleep)
    return _FakeAsyncClient


async def _collect(provider: GoogleGeminiProvider, prompt: str = "ping", max_tokens: int = 16) -> list[str]:
    return [chunk async for chunk in provider.generate_stream(prompt, max_tokens=max_tokens)]


@pytest.mark.asyncio
async def test_gemini_stream_parses_text_and_usage(fake_client) -> None:
    fake_client.responses = [
        _FakeStreamResponse(
            status_code=200,
            lines=[
                _data("Pro"),
                "",
                ": keep-alive",
                _data("ng", usage={"promptTokenCount": 20, "candidatesTokenCount": 7}),
            ],
        )
    ]
    provider = GoogleGeminiProvider(api_key="AIza-test-key", model_id="gemini-1.5-flash")

    chunks = await _collect(provider, "Reply briefly.")

    assert "".join(chunks) == "Prong"
    assert provider.last_usage.input_tokens == 20
    assert provider.last_usage.output_tokens == 7

    call = fake_client.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == (
        "https://generativelanguage.googleapis.com/v1beta/"
        "models/gemini-1.5-flash:streamGenerateContent?alt=sse"
    )
    assert call["headers"]["x-goog-api-key"] == "AIza-test-key"
    assert call["json"]["contents"] == [{"role": "user", "parts": [{"text": "Reply briefly."}]}]
    assert call["json"]["generationConfig"]["maxOutputTokens"] == 16


@pytest.mark.asyncio
async def test_gemini_retries_throttling_before_first_chunk(fake_client) -> None:
    fake_client.responses = [
        _FakeStreamResponse(status_code=429, lines=[]),
        _FakeStreamResponse(status_code=503, lines=[]),
        _FakeStreamResponse(status_code=200, lines=[_data("ok")]),
    ]
    provider = GoogleGeminiProvider(api_key="k", model_id="m")

    assert await _collect(provider) == ["ok"]
    assert len(fake_client.calls) == 3


@pytest.mark.asyncio
async def test_gemini_gives_up_after_retries(fake_client) -> None:
    fake_client.responses = [_FakeStreamResponse(status_code=500, lines=[]) for _ in range(2)]
    provider = GoogleGeminiProvider(api_key="k", model_id="m", retries=2)

    with pytest.raises(LLMError, match="after 2 attempts"):
        await _collect(provider)


@pytest.mark.asyncio
async def test_gemini_client_errors_are_not_retried(fake_client) -> None:
    fake_client.responses = [
        _FakeStreamResponse(status_code=400, lines=[], body='{"error": "bad request"}')
    ]
    provider = GoogleGeminiProvider(api_key="k", model_id="m")

    with pytest.raises(LLMError, match="400"):
        await _collect(provider)
    assert len(fake_client.calls) == 1


@pytest.mark.asyncio
async def test_gemini_timeout_after_output_is_not_replayed(fake_client) -> None:
    fake_client.responses = [
        _FakeStreamResponse(status_code=200, lines=[_data("partial"), _data("never")], fail_after=1),
        _FakeStreamResponse(status_code=200, lines=[_data("duplicate")]),
    ]
    provider = GoogleGeminiProvider(api_key="k", model_id="m")

    chunks: list[str] = []
    with pytest.raises(LLMError, match="timeout"):
        async for chunk in provider.generate_stream("p"):
            chunks.append(chunk)

    assert chunks == ["partial"]
    assert len(fake_client.calls) == 1
