"""Build the configured LLM provider."""

from __future__ import annotations

import logging

from tutor_chat.ai.llm_base import LLMError, LLMProvider
from tutor_chat.ai.llm_google import GoogleGeminiProvider

logger = logging.getLogger(__name__)


def get_llm_provider(settings) -> LLMProvider:
    """Return a fresh provider for the configured backend.

    Raises LLMError when the provider is unknown or lacks credentials.
    """
    provider = str(getattr(settings, "llm_provider", "") or "").strip().lower()
    if provider == "google":
        api_key = str(getattr(settings, "google_api_key", "") or "")
        if not api_key:
            raise LLMError("GOOGLE_API_KEY is not configured")
        return GoogleGeminiProvider(
            api_key=api_key,
            model_id=settings.llm_model_google,
        )
    raise LLMError(f"Unsupported LLM provider: {provider or '(empty)'}")
