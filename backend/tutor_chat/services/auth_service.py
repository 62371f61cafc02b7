"""Password hashing, JWT token creation, and bearer token authentication."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from tutor_chat.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
BEARER_SCHEME = "bearer"


class AuthError(Exception):
    """Base class for credential failures. ``message`` is safe to show clients."""

    message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MissingTokenError(AuthError):
    message = "Authentication token required"


class InvalidTokenError(AuthError):
    message = "Invalid authentication token"


class ExpiredTokenError(AuthError):
    message = "Authentication token expired"


class AuthFailureError(AuthError):
    message = "Authentication failed"


@dataclass(frozen=True)
class IdentityClaim:
    """Verified identity carried by one connection or one HTTP request."""

    user_id: int
    email: str
    issued_at: datetime | None
    expires_at: datetime


def hash_password(plain: str) -> str:
    """Hash a plaintext password using bcrypt."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against a hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        # Invalid/unsupported stored hash should fail closed.
        return False


def create_access_token(user_id: int, email: str) -> str:
    """Create a signed access token for a user."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
        "iss": settings.jwt_issuer,
        "token_type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=ALGORITHM)


def _strip_scheme(raw_token: str) -> str:
    token = raw_token.strip()
    scheme, _, rest = token.partition(" ")
    if scheme.lower() == BEARER_SCHEME:
        token = rest.strip()
    return token


def _timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def authenticate(raw_token: str | None) -> IdentityClaim:
    """Verify a bearer token and return the identity it carries.

    Raises a subclass of ``AuthError``; never has side effects.
    """
    if raw_token is None or not raw_token.strip():
        raise MissingTokenError()

    token = _strip_scheme(raw_token)
    if not token:
        raise MissingTokenError()

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[ALGORITHM],
            issuer=settings.jwt_issuer,
        )
    except ExpiredSignatureError:
        raise ExpiredTokenError()
    except JWTClaimsError as exc:
        logger.info("Token claims rejected: %s", exc)
        raise AuthFailureError()
    except JWTError as exc:
        logger.info("Token verification failed: %s", exc)
        raise InvalidTokenError()

    if payload.get("token_type") != "access":
        raise AuthFailureError("Invalid token type")

    try:
        user_id = int(payload["sub"])
        email = str(payload["email"])
        expires_at = _timestamp(payload["exp"])
        issued_at = _timestamp(payload.get("iat"))
    except (KeyError, TypeError, ValueError):
        raise AuthFailureError("Invalid token payload")

    return IdentityClaim(
        user_id=user_id,
        email=email,
        issued_at=issued_at,
        expires_at=expires_at,
    )
