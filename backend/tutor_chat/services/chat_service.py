"""Chat turn persistence and history queries."""

import logging

from sqlalchemy import Select, case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tutor_chat.models.chat import SENDER_AI, SENDER_USER, ChatMessage
from tutor_chat.models.goal import Goal

logger = logging.getLogger(__name__)

VALID_SENDERS = {SENDER_USER, SENDER_AI}


class StorageError(RuntimeError):
    """Raised when a chat store query or insert fails."""


def _history_query(user_id: int, goal_id: int | None = None) -> Select:
    """Base query for one user's turns, optionally narrowed to a goal."""
    query = select(ChatMessage).where(ChatMessage.user_id == user_id)
    if goal_id is not None:
        query = query.where(ChatMessage.goal_id == goal_id)
    return query


def _newest_first(query: Select) -> Select:
    return query.order_by(ChatMessage.timestamp.desc(), ChatMessage.id.desc())


def message_payload(message: ChatMessage) -> dict:
    """Serialise a stored turn for the client."""
    return {
        "id": message.id,
        "message": message.message,
        "sender": message.sender,
        "goal_id": message.goal_id,
        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
    }


async def resolve_owned_goal_id(
    db: AsyncSession, user_id: int, goal_id: int | None
) -> int | None:
    """Return ``goal_id`` if the user owns that goal, otherwise None."""
    if goal_id is None:
        return None
    try:
        owned = await db.scalar(
            select(Goal.id).where(Goal.id == goal_id, Goal.user_id == user_id)
        )
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to look up goal {goal_id}: {exc}") from exc
    if owned is None:
        logger.info("Dropping goal %s on turn from user %s: not owned", goal_id, user_id)
    return owned


async def save_message(
    db: AsyncSession,
    user_id: int,
    message: str,
    sender: str,
    goal_id: int | None = None,
) -> ChatMessage:
    """Insert one turn and commit it. Sender and timestamp are set here, never by clients."""
    if sender not in VALID_SENDERS:
        raise ValueError(f"Unknown sender: {sender}")

    msg = ChatMessage(
        user_id=user_id,
        goal_id=goal_id,
        message=message,
        sender=sender,
    )
    try:
        db.add(msg)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError(f"Failed to save {sender} message: {exc}") from exc
    return msg


async def get_history_page(
    db: AsyncSession,
    user_id: int,
    goal_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ChatMessage], bool]:
    """Return one page of turns in chronological order and whether more may exist.

    Pages are cut newest-first so ``offset=0`` is always the latest turns.
    """
    if limit < 1 or offset < 0:
        raise ValueError("limit must be >= 1 and offset must be >= 0")

    query = _newest_first(_history_query(user_id, goal_id)).limit(limit).offset(offset)
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load chat history: {exc}") from exc

    rows = list(result.scalars().all())
    rows.reverse()
    return rows, len(rows) == limit


async def get_recent_turns(
    db: AsyncSession,
    user_id: int,
    limit: int = 10,
    exclude_id: int | None = None,
) -> list[ChatMessage]:
    """Load the latest turns across all goals, oldest first."""
    query = _history_query(user_id)
    if exclude_id is not None:
        query = query.where(ChatMessage.id != exclude_id)
    try:
        result = await db.execute(_newest_first(query).limit(limit))
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to load recent turns: {exc}") from exc

    rows = list(result.scalars().all())
    rows.reverse()
    return rows


async def get_chat_stats(db: AsyncSession, user_id: int) -> dict:
    """Aggregate message counts and first/last activity for a user."""
    query = select(
        func.count(ChatMessage.id).label("total_messages"),
        func.count(case((ChatMessage.sender == SENDER_USER, 1))).label("user_messages"),
        func.count(case((ChatMessage.sender == SENDER_AI, 1))).label("ai_messages"),
        func.count(func.distinct(ChatMessage.goal_id)).label("goals_discussed"),
        func.min(ChatMessage.timestamp).label("first_message"),
        func.max(ChatMessage.timestamp).label("last_message"),
    ).where(ChatMessage.user_id == user_id)

    try:
        row = (await db.execute(query)).one()
    except SQLAlchemyError as exc:
        logger.error("Error getting chat stats for user %s: %s", user_id, exc)
        raise StorageError(f"Failed to load chat stats: {exc}") from exc

    return {
        "total_messages": int(row.total_messages or 0),
        "user_messages": int(row.user_messages or 0),
        "ai_messages": int(row.ai_messages or 0),
        "goals_discussed": int(row.goals_discussed or 0),
        "first_message": row.first_message,
        "last_message": row.last_message,
    }
