from tutor_chat.models.user import User, Base
from tutor_chat.models.goal import Goal, Milestone
from tutor_chat.models.chat import ChatMessage

__all__ = [
    "User",
    "Base",
    "Goal",
    "Milestone",
    "ChatMessage",
]
