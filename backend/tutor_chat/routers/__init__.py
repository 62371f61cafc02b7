from tutor_chat.routers.auth import router as auth_router
from tutor_chat.routers.chat import router as chat_router
from tutor_chat.routers.health import router as health_router

__all__ = [
    "auth_router",
    "chat_router",
    "health_router",
]
