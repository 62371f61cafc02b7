"""Relay streamed LLM output to a connection chunk by chunk."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from tutor_chat.ai.llm_base import LLMProvider

logger = logging.getLogger(__name__)

# Returns False once the receiving connection has gone away.
ChunkSink = Callable[[str], Awaitable[bool]]


@dataclass
class RelayResult:
    text: str
    chunk_count: int
    interrupted: bool = False


async def relay_generation(
    llm: LLMProvider,
    prompt: str,
    emit_chunk: ChunkSink,
    max_tokens: int = 2048,
) -> RelayResult:
    """Stream one generation through ``emit_chunk`` and return the accumulated text.

    Chunks are forwarded in the order the provider yields them. When the sink
    reports the connection is gone the upstream stream is closed early and the
    text received so far is returned with ``interrupted=True``. Provider errors
    propagate to the caller.
    """
    parts: list[str] = []
    stream = llm.generate_stream(prompt, max_tokens=max_tokens)
    try:
        async for chunk in stream:
            if not chunk:
                continue
            parts.append(chunk)
            if not await emit_chunk(chunk):
                logger.info(
                    "Connection closed mid-stream after %d chunks; stopping generation",
                    len(parts),
                )
                return RelayResult(text="".join(parts), chunk_count=len(parts), interrupted=True)
    finally:
        await stream.aclose()

    return RelayResult(text="".join(parts), chunk_count=len(parts))
