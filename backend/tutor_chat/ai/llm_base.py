"""LLM provider interface and shared types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator


class LLMError(Exception):
    """Raised when an LLM provider fails unrecoverably."""
    pass


@dataclass
class LLMUsage:
    """Token usage reported by the LLM API after a call completes."""
    input_tokens: int = 0
    output_tokens: int = 0
    usage_details: dict = field(default_factory=dict)


class LLMProvider(ABC):
    """Base class for streaming text generators.

    After each generate_stream() call completes, ``last_usage`` contains
    the token counts reported by the API.
    """

    def __init__(self) -> None:
        self.last_usage: LLMUsage = LLMUsage()
        self.provider_id: str = "unknown"
        self.model_id: str = "unknown"

    @abstractmethod
    async def generate_stream(
        self,
        prompt: str,
        max_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        """Yield response text chunks in order.

        One call opens one upstream stream; the iterator is not restartable.
        """
        ...

