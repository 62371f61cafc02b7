"""Per-connection chat orchestration: events in, persistence, streamed replies out."""

import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutor_chat.ai.context_builder import build_prompt
from tutor_chat.ai.generation_relay import relay_generation
from tutor_chat.ai.llm_base import LLMError, LLMProvider
from tutor_chat.ai.prompts import FALLBACK_RESPONSE
from tutor_chat.config import settings
from tutor_chat.models.chat import SENDER_AI, SENDER_USER, ChatMessage
from tutor_chat.schemas.chat import (
    AuthEvent,
    ChatMessageEvent,
    HistoryRequestEvent,
    TypingEvent,
    UnknownEventError,
    parse_client_event,
)
from tutor_chat.services import chat_service
from tutor_chat.services.auth_service import IdentityClaim
from tutor_chat.services.broadcast_scopes import BroadcastScopes
from tutor_chat.services.chat_service import StorageError

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"
STORAGE_ERROR = "STORAGE_ERROR"
GENERATION_ERROR = "GENERATION_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


def _describe_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid message format"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


class ChatSessionHandler:
    """Holds the state of one authenticated WebSocket connection.

    The receive loop feeds raw frames to ``handle_raw`` in arrival order.
    Replies are generated in background tasks that share a per-connection
    lock, so two replies for the same connection never interleave.
    """

    def __init__(
        self,
        websocket: Any,
        identity: IdentityClaim,
        *,
        llm: LLMProvider,
        session_factory: async_sessionmaker[AsyncSession],
        scopes: BroadcastScopes,
        response_delay: float | None = None,
        connection_id: str | None = None,
    ) -> None:
        self.ws = websocket
        self.identity = identity
        self.connection_id = connection_id or uuid.uuid4().hex
        self.llm = llm
        self._session_factory = session_factory
        self._scopes = scopes
        self._response_delay = (
            settings.ai_response_delay_seconds if response_delay is None else response_delay
        )
        self._alive = True
        self._joined = False
        self._generation_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def user_id(self) -> int:
        return self.identity.user_id

    @property
    def closed(self) -> bool:
        return not self._alive

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Join the owner's broadcast scope; the connection is now active."""
        self._scopes.join(self.user_id, self)
        self._joined = True

    def close(self) -> None:
        """Stop processing and leave the broadcast scope. Safe to call twice."""
        self._alive = False
        if self._joined:
            self._scopes.leave(self.user_id, self)
            self._joined = False

    async def wait_for_generations(self) -> None:
        """Wait for in-flight replies so their persistence completes."""
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, payload: dict) -> bool:
        """Send JSON to the client, return False if it is gone."""
        if not self._alive:
            return False
        try:
            await self.ws.send_json(payload)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.info("Send failed for connection %s: %s", self.connection_id, exc)
            self._alive = False
            return False

    async def send_error(self, code: str, message: str) -> bool:
        return await self.send({"type": "error", "code": code, "message": message})

    async def _send_turn(self, turn: ChatMessage) -> bool:
        return await self.send({"type": "chat_message", **chat_service.message_payload(turn)})

    async def _send_ai_typing(self, is_typing: bool) -> bool:
        return await self.send({"type": "ai_typing", "is_typing": is_typing})

    async def _emit_chunk(self, chunk: str) -> bool:
        return await self.send(
            {"type": "ai_message_chunk", "content": chunk, "is_complete": False}
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str) -> None:
        """Decode, validate and dispatch one client frame."""
        if self.closed:
            return
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error(VALIDATION_ERROR, "Invalid message format")
            return

        try:
            event = parse_client_event(data)
        except UnknownEventError as exc:
            await self.send_error(VALIDATION_ERROR, str(exc))
            return
        except ValidationError as exc:
            await self.send_error(VALIDATION_ERROR, _describe_validation_error(exc))
            return

        try:
            await self.handle_event(event)
        except Exception:
            logger.exception("Unexpected error handling event type=%s", data.get("type"))
            await self.send_error(INTERNAL_ERROR, "An internal error occurred.")

    async def handle_event(self, event) -> None:
        if isinstance(event, ChatMessageEvent):
            await self.submit_message(event)
        elif isinstance(event, TypingEvent):
            await self.set_typing(event)
        elif isinstance(event, HistoryRequestEvent):
            await self.get_history(event)
        elif isinstance(event, AuthEvent):
            # Already authenticated at handshake.
            return

    async def submit_message(self, event: ChatMessageEvent) -> ChatMessage | None:
        """Persist the user's turn, confirm it, then schedule the reply."""
        text = event.message.strip()
        if not text:
            await self.send_error(VALIDATION_ERROR, "Message cannot be empty")
            return None

        try:
            async with self._session_factory() as db:
                goal_id = await chat_service.resolve_owned_goal_id(
                    db, self.user_id, event.goal_id
                )
                turn = await chat_service.save_message(
                    db, self.user_id, text, SENDER_USER, goal_id=goal_id
                )
        except (StorageError, SQLAlchemyError) as exc:
            logger.error("Chat message error for user %s: %s", self.user_id, exc)
            await self.send_error(STORAGE_ERROR, "Failed to process message")
            return None

        await self._send_turn(turn)
        self._schedule_generation(turn)
        return turn

    async def set_typing(self, event: TypingEvent) -> None:
        """Tell the user's other connections whether this one is typing."""
        await self._scopes.broadcast(
            self.user_id,
            {"type": "user_typing", "user_id": self.user_id, "is_typing": event.is_typing},
            exclude=self,
        )

    async def get_history(self, event: HistoryRequestEvent) -> None:
        try:
            async with self._session_factory() as db:
                messages, has_more = await chat_service.get_history_page(
                    db,
                    self.user_id,
                    goal_id=event.goal_id,
                    limit=event.limit,
                    offset=event.offset,
                )
        except (StorageError, SQLAlchemyError) as exc:
            logger.error("Chat history error for user %s: %s", self.user_id, exc)
            await self.send_error(STORAGE_ERROR, "Failed to load chat history")
            return

        await self.send({
            "type": "chat_history",
            "messages": [chat_service.message_payload(m) for m in messages],
            "has_more": has_more,
        })

    # ------------------------------------------------------------------
    # Reply generation
    # ------------------------------------------------------------------

    def _schedule_generation(self, user_turn: ChatMessage) -> asyncio.Task:
        task = asyncio.create_task(self._generate_reply(user_turn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _generate_reply(self, user_turn: ChatMessage) -> None:
        if self._response_delay > 0:
            await asyncio.sleep(self._response_delay)

        async with self._generation_lock:
            if self.closed:
                logger.info(
                    "Connection %s closed before reply to message %s; abandoning generation",
                    self.connection_id,
                    user_turn.id,
                )
                return
            await self._stream_reply(user_turn)

    async def _stream_reply(self, user_turn: ChatMessage) -> None:
        goal_id = user_turn.goal_id
        try:
            async with self._session_factory() as db:
                prompt = await build_prompt(
                    db,
                    self.user_id,
                    user_turn.message,
                    goal_id,
                    exclude_message_id=user_turn.id,
                    max_turns=settings.chat_context_turns,
                )

            if not await self._send_ai_typing(True):
                logger.info(
                    "Connection %s gone before streaming; skipping reply to message %s",
                    self.connection_id,
                    user_turn.id,
                )
                return
            result = await relay_generation(
                self.llm,
                prompt,
                self._emit_chunk,
                max_tokens=settings.llm_max_output_tokens,
            )

            if result.interrupted:
                await self._persist_partial_reply(result.text, goal_id)
                return
            if not result.text.strip():
                raise LLMError("Generation produced no text")

            await self._send_ai_typing(False)
            async with self._session_factory() as db:
                ai_turn = await chat_service.save_message(
                    db, self.user_id, result.text, SENDER_AI, goal_id=goal_id
                )
            usage = self.llm.last_usage
            logger.info(
                "Reply %s for user %s: %d chunks, %d input tokens, %d output tokens",
                ai_turn.id,
                self.user_id,
                result.chunk_count,
                usage.input_tokens,
                usage.output_tokens,
            )
            await self._send_turn(ai_turn)
        except Exception as exc:
            logger.error("AI response generation error for user %s: %s", self.user_id, exc)
            await self._send_fallback_reply(goal_id)

    async def _persist_partial_reply(self, text: str, goal_id: int | None) -> None:
        """Keep whatever was streamed before the client went away."""
        if not text:
            logger.info("No partial reply to keep for user %s", self.user_id)
            return
        try:
            async with self._session_factory() as db:
                turn = await chat_service.save_message(
                    db, self.user_id, text, SENDER_AI, goal_id=goal_id
                )
            logger.info("Stored partial reply %s for user %s", turn.id, self.user_id)
        except (StorageError, SQLAlchemyError) as exc:
            logger.error("Failed to store partial reply for user %s: %s", self.user_id, exc)

    async def _send_fallback_reply(self, goal_id: int | None) -> None:
        if self.closed:
            logger.info("Connection %s closed; skipping fallback reply", self.connection_id)
            return

        await self._send_ai_typing(False)
        try:
            async with self._session_factory() as db:
                turn = await chat_service.save_message(
                    db, self.user_id, FALLBACK_RESPONSE, SENDER_AI, goal_id=goal_id
                )
        except (StorageError, SQLAlchemyError) as exc:
            logger.error("Database error in fallback for user %s: %s", self.user_id, exc)
            await self.send_error(GENERATION_ERROR, "Failed to generate response")
            return

        await self._send_turn(turn)
