from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from tutor_chat.config import settings


class _ClientEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AuthEvent(_ClientEvent):
    type: Literal["auth"]
    token: str | None = None


class ChatMessageEvent(_ClientEvent):
    type: Literal["chat_message"]
    message: str = Field(default="", max_length=16000)
    goal_id: int | None = Field(
        default=None,
        ge=1,
        strict=True,
        validation_alias=AliasChoices("goal_id", "goalId"),
    )


class TypingEvent(_ClientEvent):
    type: Literal["typing"]
    is_typing: bool = Field(strict=True, validation_alias=AliasChoices("is_typing", "isTyping"))


class HistoryQuery(BaseModel):
    """Pagination for chat history. Values must be integers; nothing is coerced."""

    goal_id: int | None = Field(
        default=None,
        ge=1,
        strict=True,
        validation_alias=AliasChoices("goal_id", "goalId"),
    )
    limit: int = Field(
        default_factory=lambda: settings.chat_history_default_limit, ge=1, strict=True
    )
    offset: int = Field(default=0, ge=0, strict=True)

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: int) -> int:
        if value > settings.chat_history_max_limit:
            raise ValueError(f"limit must be at most {settings.chat_history_max_limit}")
        return value


class HistoryRequestEvent(HistoryQuery):
    type: Literal["get_chat_history"]

    model_config = ConfigDict(extra="forbid")


ClientEvent = AuthEvent | ChatMessageEvent | TypingEvent | HistoryRequestEvent

CLIENT_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "auth": AuthEvent,
    "chat_message": ChatMessageEvent,
    "typing": TypingEvent,
    "get_chat_history": HistoryRequestEvent,
}


class UnknownEventError(ValueError):
    """Raised for frames whose ``type`` is not a known client event."""


def parse_client_event(data: object) -> ClientEvent:
    """Validate a decoded JSON frame into one of the client event models.

    Raises UnknownEventError for unrecognised shapes and pydantic's
    ValidationError for bad field values.
    """
    if not isinstance(data, dict):
        raise UnknownEventError("Event must be a JSON object")
    event_type = data.get("type")
    model = CLIENT_EVENT_MODELS.get(event_type) if isinstance(event_type, str) else None
    if model is None:
        raise UnknownEventError(f"Unknown event type: {event_type}")
    return model.model_validate(data)


class ChatMessageOut(BaseModel):
    id: int
    message: str
    sender: str
    goal_id: int | None = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatHistoryOut(BaseModel):
    messages: list[ChatMessageOut]
    has_more: bool


class ChatStatsOut(BaseModel):
    total_messages: int
    user_messages: int
    ai_messages: int
    goals_discussed: int
    first_message: datetime | None = None
    last_message: datetime | None = None
