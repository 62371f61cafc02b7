"""Streaming relay tests."""

import pytest

from tests.conftest import FailingLLMProvider, MockLLMProvider
from tutor_chat.ai.generation_relay import relay_generation
from tutor_chat.ai.llm_base import LLMError


class _Sink:
    def __init__(self, accept: int | None = None) -> None:
        self.accept = accept
        self.chunks: list[str] = []

    async def __call__(self, chunk: str) -> bool:
        if self.accept is not None and len(self.chunks) >= self.accept:
            return False
        self.chunks.append(chunk)
        return True


@pytest.mark.asyncio
async def test_chunks_are_forwarded_in_order_and_concatenated() -> None:
    llm = MockLLMProvider(["Py", "thon", " is", " fun"])
    sink = _Sink()

    result = await relay_generation(llm, "prompt", sink)

    assert sink.chunks == ["Py", "thon", " is", " fun"]
    assert result.text == "".join(sink.chunks) == "Python is fun"
    assert result.chunk_count == 4
    assert result.interrupted is False
    assert llm.prompts == ["prompt"]


@pytest.mark.asyncio
async def test_empty_chunks_are_skipped() -> None:
    sink = _Sink()
    result = await relay_generation(MockLLMProvider(["a", "", "b"]), "p", sink)
    assert sink.chunks == ["a", "b"]
    assert result.chunk_count == 2


@pytest.mark.asyncio
async def test_closed_sink_stops_the_stream_early() -> None:
    llm = MockLLMProvider(["one ", "two ", "three ", "four"])
    sink = _Sink(accept=2)

    result = await relay_generation(llm, "p", sink)

    assert result.interrupted is True
    # The chunk that could not be delivered is still part of the partial text.
    assert result.text == "one two three "
    assert sink.chunks == ["one ", "two "]
    assert llm.closed is True


@pytest.mark.asyncio
async def test_provider_errors_propagate() -> None:
    sink = _Sink()
    with pytest.raises(LLMError):
        await relay_generation(FailingLLMProvider(["partial"]), "p", sink)
    assert sink.chunks == ["partial"]
