from tutor_chat.schemas.user import (
    UserRegister,
    UserLogin,
    UserOut,
    UserProfile,
    AuthResponse,
)
from tutor_chat.schemas.chat import (
    AuthEvent,
    ChatMessageEvent,
    TypingEvent,
    HistoryQuery,
    HistoryRequestEvent,
    ChatMessageOut,
    ChatHistoryOut,
    ChatStatsOut,
    parse_client_event,
)

__all__ = [
    "UserRegister",
    "UserLogin",
    "UserOut",
    "UserProfile",
    "AuthResponse",
    "AuthEvent",
    "ChatMessageEvent",
    "TypingEvent",
    "HistoryQuery",
    "HistoryRequestEvent",
    "ChatMessageOut",
    "ChatHistoryOut",
    "ChatStatsOut",
    "parse_client_event",
]
