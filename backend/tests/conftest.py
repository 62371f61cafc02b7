"""Shared test fixtures and mock implementations."""

import uuid
from typing import AsyncIterator

import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import tutor_chat.models  # noqa: F401
from tutor_chat.ai.llm_base import LLMError, LLMProvider, LLMUsage
from tutor_chat.models.user import Base, User


class MockLLMProvider(LLMProvider):
    """Mock LLM provider that yields predetermined tokens.

    Records every prompt it receives and sets last_usage after streaming.
    """

    def __init__(
        self,
        tokens: list[str] | None = None,
        input_tokens: int = 10,
        output_tokens: int = 5,
    ) -> None:
        super().__init__()
        self.tokens = tokens if tokens is not None else ["Hello", " ", "world"]
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self.prompts: list[str] = []
        self.closed = False

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        self.last_usage = LLMUsage()
        try:
            for token in self.tokens:
                yield token
        finally:
            self.closed = True
        # Simulate precise usage from the API.
        self.last_usage.input_tokens = self._input_tokens
        self.last_usage.output_tokens = self._output_tokens


class FailingLLMProvider(LLMProvider):
    """Yields ``tokens`` and then raises LLMError."""

    def __init__(self, tokens: list[str] | None = None, message: str = "upstream unavailable") -> None:
        super().__init__()
        self.tokens = tokens or []
        self.message = message
        self.call_count = 0

    async def generate_stream(self, prompt: str, max_tokens: int = 2048) -> AsyncIterator[str]:
        self.call_count += 1
        for token in self.tokens:
            yield token
        raise LLMError(self.message)


async def create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_session_factory(db_path) -> tuple:
    """Build an engine + session factory bound to a SQLite file.

    NullPool keeps connections from leaking between event loops. Foreign keys
    are enforced on every connection, as on PostgreSQL.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_factory


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email: str | None = None,
    name: str | None = "Test Learner",
) -> User:
    async with session_factory() as db:
        user = User(
            email=email or f"{uuid.uuid4().hex}@example.com",
            name=name,
            password_hash="x",
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


@pytest_asyncio.fixture
async def db_factory(tmp_path):
    """Create an isolated SQLite database and yield its session factory."""
    engine, session_factory = make_session_factory(tmp_path / "tutor_chat.sqlite3")
    await create_tables(engine)
    try:
        yield session_factory
    finally:
        await engine.dispose()
