"""Chat router: REST endpoints and WebSocket handler for the AI tutor."""

import asyncio
import json
import logging
from typing import Annotated

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tutor_chat.ai.llm_base import LLMError
from tutor_chat.ai.llm_factory import get_llm_provider
from tutor_chat.config import settings
from tutor_chat.db.session import AsyncSessionLocal
from tutor_chat.dependencies import get_current_identity, get_db
from tutor_chat.schemas.chat import ChatHistoryOut, ChatStatsOut, HistoryQuery
from tutor_chat.services import chat_service
from tutor_chat.services.auth_service import AuthError, IdentityClaim, authenticate
from tutor_chat.services.broadcast_scopes import broadcast_scopes
from tutor_chat.services.chat_service import StorageError
from tutor_chat.services.chat_session import (
    INTERNAL_ERROR,
    VALIDATION_ERROR,
    ChatSessionHandler,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

WS_CLOSE_AUTH_FAILED = 4001
WS_CLOSE_TOO_MANY_CONNECTIONS = 4002
WS_CLOSE_UNAVAILABLE = 1011


# ── REST endpoints ──────────────────────────────────────────────────


@router.get("/api/chat/history", response_model=ChatHistoryOut)
async def get_history(
    identity: Annotated[IdentityClaim, Depends(get_current_identity)],
    db: Annotated[AsyncSession, Depends(get_db)],
    goal_id: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
):
    """Return one page of the caller's chat history, oldest first."""
    params = {"goal_id": goal_id, "offset": offset}
    if limit is not None:
        params["limit"] = limit
    try:
        query = HistoryQuery(**params)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        )

    try:
        messages, has_more = await chat_service.get_history_page(
            db,
            identity.user_id,
            goal_id=query.goal_id,
            limit=query.limit,
            offset=query.offset,
        )
    except StorageError as exc:
        logger.error("Chat history error for user %s: %s", identity.user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load chat history",
        )
    return {"messages": messages, "has_more": has_more}


@router.get("/api/chat/stats", response_model=ChatStatsOut)
async def get_stats(
    identity: Annotated[IdentityClaim, Depends(get_current_identity)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Return message counts and first/last activity for the caller."""
    try:
        return await chat_service.get_chat_stats(db, identity.user_id)
    except StorageError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load chat statistics",
        )


# ── WebSocket helpers ───────────────────────────────────────────────


def _authenticate_ws(token: str | None) -> IdentityClaim:
    """Verify the handshake token. Raises AuthError on any failure."""
    return authenticate(token)


async def _resolve_ws_token(websocket: WebSocket, query_token: str | None) -> str | None:
    """Resolve token from query string or initial auth frame."""
    if query_token:
        return query_token

    try:
        raw = await asyncio.wait_for(
            websocket.receive_text(), timeout=settings.ws_auth_timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.info("No auth frame received within %.1fs", settings.ws_auth_timeout_seconds)
        return None
    except (WebSocketDisconnect, RuntimeError, KeyError):
        return None

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("type") != "auth":
        return None
    token = payload.get("token")
    return token if isinstance(token, str) else None


async def _reject(websocket: WebSocket, code: str, message: str, close_code: int) -> None:
    await websocket.send_json({"type": "error", "code": code, "message": message})
    await websocket.close(code=close_code, reason=message)


# ── WebSocket endpoint ──────────────────────────────────────────────


@router.websocket("/ws/chat")
async def websocket_chat(
    websocket: WebSocket,
    token: str | None = Query(default=None),
):
    """WebSocket endpoint for the chat pipeline."""
    await websocket.accept()

    resolved_token = await _resolve_ws_token(websocket, token)
    try:
        identity = _authenticate_ws(resolved_token)
    except AuthError as exc:
        logger.warning("WebSocket authentication failed: %s", exc.message)
        await _reject(websocket, "AUTH_ERROR", exc.message, WS_CLOSE_AUTH_FAILED)
        return

    # Enforce concurrent connection limit.
    if not broadcast_scopes.can_join(identity.user_id):
        await _reject(
            websocket,
            "TOO_MANY_CONNECTIONS",
            "Too many connections",
            WS_CLOSE_TOO_MANY_CONNECTIONS,
        )
        return

    try:
        llm = get_llm_provider(settings)
    except LLMError as exc:
        logger.error("Failed to initialise LLM provider: %s", exc)
        await _reject(websocket, INTERNAL_ERROR, "Service unavailable", WS_CLOSE_UNAVAILABLE)
        return

    handler = ChatSessionHandler(
        websocket,
        identity,
        llm=llm,
        session_factory=AsyncSessionLocal,
        scopes=broadcast_scopes,
    )
    handler.open()
    logger.info(
        "User %s connected to chat (connection %s)", identity.email, handler.connection_id
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                await handler.send_error(VALIDATION_ERROR, "Binary frames are not supported")
                continue
            await handler.handle_raw(raw)
    except WebSocketDisconnect:
        logger.info("User %s disconnected from chat", identity.email)
    except Exception as exc:
        logger.exception("WebSocket error: %s", exc)
        if await handler.send_error(INTERNAL_ERROR, "Internal error"):
            try:
                await websocket.close(code=WS_CLOSE_UNAVAILABLE, reason="Internal error")
            except (RuntimeError, WebSocketDisconnect) as close_exc:
                logger.info("Close after internal error failed: %s", close_exc)
    finally:
        handler.close()
        await handler.wait_for_generations()
