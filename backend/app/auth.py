"""API auth: JWT (email/password or Google sign-in) or API key. Returns User for protected routes."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status, Query
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db
from .models import User

import bcrypt


api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)
http_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def create_access_token(user_id: int, email: Optional[str] = None) -> str:
    if not settings.secret_key:
        raise ValueError("SECRET_KEY not set")
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    to_encode = {"sub": str(user_id), "email": email, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def user_id_from_token(token: str) -> Optional[int]:
    """Subject of a valid JWT, or None (bad signature, expired, malformed)."""
    if not settings.secret_key or not token:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        return None


async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalars().first()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalars().first()


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> User:
    """
    Validate API key or JWT bearer token.

    API keys must map to a specific user via API_KEY_USER_ID; there is no anonymous mode.
    """
    if not settings.secret_key and not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth not configured. Set SECRET_KEY (JWT) or API_KEY (+ API_KEY_USER_ID).",
        )

    if settings.api_key and api_key and api_key == settings.api_key:
        if settings.api_key_user_id is None:
            raise _unauthorized("API key is enabled but API_KEY_USER_ID is not set.")
        user = await get_user_by_id(db, settings.api_key_user_id)
        if user:
            return user
        raise _unauthorized("API key user not found")

    if credentials and credentials.credentials:
        if not settings.secret_key:
            raise _unauthorized("JWT auth is not enabled (SECRET_KEY not set).")
        uid = user_id_from_token(credentials.credentials)
        if uid is not None:
            user = await get_user_by_id(db, uid)
            if user:
                return user

    raise _unauthorized("Invalid or missing credentials")


async def get_current_user_required(
    current_user: User = Depends(get_current_user),
) -> User:
    """Require a logged-in user; 401 if not."""
    return current_user


async def get_current_user_for_sse(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> User:
    """Auth for SSE: accept JWT from ?token= (EventSource can't set headers) or Bearer/API key."""
    if token:
        uid = user_id_from_token(token)
        if uid is not None:
            user = await get_user_by_id(db, uid)
            if user:
                return user
    return await get_current_user(db=db, credentials=credentials, api_key=api_key)
