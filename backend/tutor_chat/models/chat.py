"""Persisted chat turns between a user and the AI tutor."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tutor_chat.models.user import Base

SENDER_USER = "user"
SENDER_AI = "ai"


def _utc_now_naive() -> datetime:
    """Return a naive UTC datetime without deprecated utcnow()."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    goal_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("goals.id", ondelete="SET NULL"), nullable=True
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    # Always stamped by the server; microsecond precision keeps turn order stable.
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utc_now_naive
    )

    __table_args__ = (
        CheckConstraint("sender IN ('user', 'ai')", name="ck_chat_messages_sender"),
        Index("ix_chat_messages_user_timestamp", "user_id", "timestamp"),
        Index("ix_chat_messages_user_goal_timestamp", "user_id", "goal_id", "timestamp"),
    )
