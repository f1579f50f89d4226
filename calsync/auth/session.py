"""Bearer authentication for inbound calls using JWT tokens."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from calsync.config import get_session_secret, get_settings
from calsync.database import get_database

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Claims carried in the JWT."""
    user_id: int
    email: str
    exp: datetime


class User(BaseModel):
    """User model for authenticated requests."""
    id: int
    email: str
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None


def create_session_token(user_id: int, email: str) -> str:
    """Create a JWT bearer token."""
    settings = get_settings()
    secret = get_session_secret()

    expire = datetime.utcnow() + timedelta(days=settings.session_expire_days)
    data = {
        "user_id": user_id,
        "email": email,
        "exp": expire,
    }

    return jwt.encode(data, secret, algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Verify and decode a bearer token."""
    try:
        secret = get_session_secret()
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return SessionData(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


async def get_user_by_id(user_id: int) -> Optional[User]:
    """Get user from database by ID."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM users WHERE id = ?", (user_id,)
    )
    row = await cursor.fetchone()

    if row:
        return User(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            created_at=row["created_at"],
        )
    return None


def _extract_token(request: Request) -> Optional[str]:
    """Read the bearer token from the Authorization header, falling back to the cookie."""
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_current_user(request: Request) -> User:
    """Get current user from the bearer credential, raises 401 if not authenticated."""
    token = _extract_token(request)
    session = verify_session_token(token) if token else None
    user = await get_user_by_id(session.user_id) if session else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
