"""Liveness endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter

router = APIRouter(tags=["health"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "healthy", "timestamp": _now_iso()}


@router.get("/")
async def root():
    return {
        "message": "AI Tutor chat server",
        "status": "healthy",
        "timestamp": _now_iso(),
    }
