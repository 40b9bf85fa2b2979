"""Auth API: email/password login, Sign in with Google (also connects Gmail read access), /me."""
import logging
import secrets
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from pydantic import BaseModel
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import httpx

from ..oauth_state_db import (
    KIND_GOOGLE_LOGIN,
    oauth_state_cleanup_expired,
    oauth_state_consume,
    oauth_state_set,
)
from ..auth import (
    create_access_token,
    get_current_user_required,
    verify_password,
    get_user_by_email,
)
from ..database import get_db
from ..gmail_service import SCOPES as GMAIL_SCOPES
from ..models import MailAccount, User
from ..config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
SCOPES = ["openid", "email", "profile", *GMAIL_SCOPES]


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    email: Optional[str] = None


class MeResponse(BaseModel):
    email: str
    id: int
    name: Optional[str] = None
    has_password: bool = False
    gmail_connected: bool = False


def _default_frontend_origin(request: Request) -> str:
    if settings.cors_origins:
        return settings.cors_origins[0]
    # Starlette's request.base_url includes a trailing slash.
    return str(request.base_url).rstrip("/")


def _google_redirect_uri(request: Request) -> str:
    """
    Redirect URI used for Google OAuth callback.

    Must be registered in the Google Cloud OAuth client settings.
    """
    if settings.google_redirect_uri:
        return settings.google_redirect_uri
    return f"{str(request.base_url).rstrip('/')}/api/auth/google/callback"


async def _has_mail_account(db: AsyncSession, user_id: int) -> bool:
    result = await db.execute(select(MailAccount.id).where(MailAccount.user_id == user_id))
    return result.first() is not None


async def store_mail_account(db: AsyncSession, user_id: int, token_response: dict) -> MailAccount:
    """Upsert the user's Google tokens. Google omits refresh_token on re-consent; keep the old one then."""
    account = (
        await db.execute(select(MailAccount).where(MailAccount.user_id == user_id))
    ).scalar_one_or_none()
    if account is None:
        account = MailAccount(user_id=user_id, provider="google")
        db.add(account)
    account.access_token = token_response.get("access_token")
    if token_response.get("refresh_token"):
        account.refresh_token = token_response["refresh_token"]
    expires_in = token_response.get("expires_in")
    if expires_in:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        account.expires_at = now + timedelta(seconds=int(expires_in))
    account.scope = token_response.get("scope") or account.scope
    await db.commit()
    return account


@router.post("/login", response_model=TokenResponse)
async def login_email_password(req: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Email + password sign-in for accounts created with a password. Returns a JWT."""
    if not settings.secret_key:
        raise HTTPException(status_code=500, detail="SECRET_KEY not set")
    user = await get_user_by_email(db, req.email.strip().lower())
    if user is not None and not user.password_hash:
        raise HTTPException(
            status_code=401,
            detail="This account signs in with Google. Use Sign in with Google to connect Gmail.",
        )
    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return TokenResponse(access_token=create_access_token(user.id, user.email), email=user.email)


@router.get("/me", response_model=MeResponse)
async def me(
    current_user: User = Depends(get_current_user_required),
    db: AsyncSession = Depends(get_db),
):
    """Current user, and whether a Gmail account is connected for sync."""
    return MeResponse(
        email=current_user.email,
        id=current_user.id,
        name=current_user.name,
        has_password=bool(current_user.password_hash),
        gmail_connected=await _has_mail_account(db, current_user.id),
    )


@router.get("/auth/google")
async def google_auth_start(
    request: Request,
    redirect_url: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Send the browser to Google consent: profile plus offline Gmail read access."""
    if not settings.google_client_id:
        raise HTTPException(status_code=500, detail="GOOGLE_CLIENT_ID not set; Google sign-in is disabled.")
    removed = await oauth_state_cleanup_expired(db)
    if removed:
        logger.debug(f"Removed {removed} expired OAuth state row(s)")
    state = secrets.token_urlsafe(32)
    await oauth_state_set(db, KIND_GOOGLE_LOGIN, state, redirect_url or _default_frontend_origin(request))
    query = urllib.parse.urlencode({
        "client_id": settings.google_client_id,
        "redirect_uri": _google_redirect_uri(request),
        "response_type": "code",
        "scope": " ".join(SCOPES),
        # offline + consent so Google returns a refresh token for background sync
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    })
    return RedirectResponse(url=f"{GOOGLE_AUTH_URL}?{query}", status_code=302)


async def _exchange_code(request: Request, code: str) -> Tuple[dict, dict]:
    """Trade the authorization code for tokens, then read the Google profile."""
    form = {
        "code": code,
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        "redirect_uri": _google_redirect_uri(request),
        "grant_type": "authorization_code",
    }
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            token_res = await client.post(GOOGLE_TOKEN_URL, data=form)
            token_res.raise_for_status()
            tokens = token_res.json()
            if tokens.get("error") or not tokens.get("access_token"):
                raise HTTPException(
                    status_code=400,
                    detail=tokens.get("error_description") or "Google returned no access token",
                )
            profile_res = await client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {tokens['access_token']}"}
            )
            profile_res.raise_for_status()
            return tokens, profile_res.json()
    except httpx.HTTPError as e:
        logger.warning(f"Google sign-in failed: {e}")
        raise HTTPException(status_code=400, detail="Google sign-in failed")


async def _upsert_google_user(db: AsyncSession, profile: dict) -> User:
    email = (profile.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="Google did not return an email")
    user = await get_user_by_email(db, email)
    if user is None:
        user = User(email=email, google_id=profile.get("id"), name=profile.get("name"))
        db.add(user)
    elif not user.google_id:
        # Password account signing in with Google for the first time
        user.google_id = profile.get("id")
        user.name = user.name or profile.get("name")
    await db.commit()
    await db.refresh(user)
    return user


@router.get("/auth/google/callback")
async def google_auth_callback(
    request: Request,
    code: Optional[str] = None,
    error: Optional[str] = None,
    state: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Finish Google sign-in: store Gmail tokens, then redirect to the frontend with a JWT."""
    login_page = f"{_default_frontend_origin(request)}/login"
    if error:
        return RedirectResponse(url=f"{login_page}?error=access_denied", status_code=302)
    entry = await oauth_state_consume(db, state, KIND_GOOGLE_LOGIN) if state else None
    if entry is None:
        reason = "invalid_state" if state else "missing_state"
        return RedirectResponse(url=f"{login_page}?error={reason}", status_code=302)
    if not code or not settings.google_client_id or not settings.google_client_secret:
        raise HTTPException(status_code=400, detail="Missing code or Google OAuth config")
    if not settings.secret_key:
        raise HTTPException(status_code=500, detail="SECRET_KEY not set")

    tokens, profile = await _exchange_code(request, code)
    user = await _upsert_google_user(db, profile)
    await store_mail_account(db, user.id, tokens)
    logger.info(f"Google sign-in for user {user.id}; Gmail credentials stored")

    jwt_token = create_access_token(user.id, user.email)
    redirect_to = entry.get("redirect_url") or _default_frontend_origin(request)
    # Fragment, so the token never reaches server access logs
    return RedirectResponse(url=f"{redirect_to}/login#token={jwt_token}", status_code=302)
