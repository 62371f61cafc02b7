"""FastAPI dependency injection for database sessions and authentication."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from tutor_chat.db.session import AsyncSessionLocal
from tutor_chat.models.user import User
from tutor_chat.services.auth_service import AuthError, IdentityClaim, authenticate

# Missing headers are reported by ``authenticate`` so every failure gets the same shape.
security = HTTPBearer(auto_error=False)


async def get_db():
    """Yield a database session."""
    async with AsyncSessionLocal() as session:
        yield session


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> IdentityClaim:
    """Verify the bearer token on an HTTP request."""
    token = credentials.credentials if credentials is not None else None
    try:
        return authenticate(token)
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    identity: Annotated[IdentityClaim, Depends(get_current_identity)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Load the account behind a verified token."""
    result = await db.execute(select(User).where(User.id == identity.user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user
