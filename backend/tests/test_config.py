"""Settings parsing tests."""

import pytest
from pydantic import ValidationError

from tutor_chat.config import Settings


def test_provider_aliases_normalise_to_google(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", " Gemini ")
    assert Settings(_env_file=None).llm_provider == "google"


def test_unsupported_provider_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "claude")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_cors_origins_parse_from_json_list(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", '["https://a.example", "https://b.example"]')
    assert Settings(_env_file=None).cors_origins == ["https://a.example", "https://b.example"]


def test_defaults_match_chat_relay_contract(monkeypatch) -> None:
    for name in ("JWT_ISSUER", "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "CHAT_CONTEXT_TURNS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.jwt_issuer == "ai-tutor-app"
    assert settings.jwt_access_token_expire_minutes == 1440
    assert settings.chat_context_turns == 10
