"""Database initialisation and migration runner."""

import asyncio
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import text

from tutor_chat.db.session import engine

logger = logging.getLogger(__name__)


def _build_alembic_config() -> Config:
    backend_dir = Path(__file__).resolve().parents[2]
    cfg = Config(str(backend_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(backend_dir / "alembic"))
    return cfg


async def init_db() -> None:
    """Run Alembic migrations, then confirm the database answers queries."""
    cfg = _build_alembic_config()
    await asyncio.to_thread(command.upgrade, cfg, "head")
    await check_connection()


async def check_connection() -> None:
    """Issue a trivial query so connection problems surface at startup."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connected successfully")
