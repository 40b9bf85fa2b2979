"""Gmail mail source: per-user OAuth tokens from mail_accounts, token refresh, rate limiting."""
import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy import select

from .config import settings
from .database import AsyncSessionLocal
from .models import MailAccount

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
TOKEN_URI = "https://oauth2.googleapis.com/token"

# Refresh this long before the provider-reported expiry.
REFRESH_MARGIN = timedelta(minutes=5)


class MailAuthError(Exception):
    """Mail credentials are missing, revoked, or could not be refreshed. User must sign in again."""


class MailFetchError(Exception):
    """The mail provider could not be reached or returned an error."""


@dataclass
class MailMessage:
    id: str
    raw_text: str


class MailSource(Protocol):
    async def fetch(self, user_id: int, max_count: int, only_unread: bool) -> List[MailMessage]:
        ...


def _utcnow() -> datetime:
    # google-auth compares expiry as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def _get_body(payload: dict) -> str:
    if "body" in payload and payload["body"].get("data"):
        return _decode(payload["body"]["data"])
    if "parts" not in payload:
        return ""
    html = ""
    for part in payload["parts"]:
        data = part.get("body", {}).get("data")
        if part.get("mimeType") == "text/plain" and data:
            return _decode(data)
        if part.get("mimeType") == "text/html" and data and not html:
            html = re.sub(r"<[^>]+>", " ", _decode(data))
        if part.get("parts") and not html:
            nested = _get_body(part)
            if nested:
                return nested
    return html


def _get_headers(email: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in email.get("payload", {}).get("headers", [])}


def email_to_text(email: dict) -> str:
    """Flatten a Gmail message into the plain text handed to the task extractor."""
    headers = _get_headers(email)
    body = _get_body(email.get("payload", {})).strip() or (email.get("snippet") or "")
    lines = []
    for name in ("subject", "from", "date"):
        if headers.get(name):
            lines.append(f"{name.capitalize()}: {headers[name]}")
    if lines:
        lines.append("")
    lines.append(body)
    return "\n".join(lines).strip()


# Rate limiting: exponential backoff
def _with_backoff(fn, max_retries: int = 5):
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in (429, 500, 503) and attempt < max_retries - 1:
                time.sleep(2 ** attempt)
                continue
            raise


def build_credentials(account: MailAccount) -> Credentials:
    creds = Credentials(
        token=account.access_token,
        refresh_token=account.refresh_token,
        token_uri=TOKEN_URI,
        client_id=settings.google_client_id or None,
        client_secret=settings.google_client_secret or None,
        scopes=(account.scope or "").split() or SCOPES,
    )
    creds.expiry = account.expires_at
    return creds


def needs_refresh(account: MailAccount, now: Optional[datetime] = None) -> bool:
    if not account.access_token or account.expires_at is None:
        return True
    return (now or _utcnow()) > account.expires_at - REFRESH_MARGIN


def fetch_messages_blocking(creds: Credentials, max_count: int, only_unread: bool) -> List[MailMessage]:
    """List and fetch up to max_count messages. Runs in a worker thread."""
    service = build("gmail", "v1", credentials=creds, cache_discovery=False)
    kwargs = {"userId": "me", "maxResults": max_count}
    if only_unread:
        kwargs["q"] = "is:unread"
    listing = _with_backoff(lambda: service.users().messages().list(**kwargs).execute())
    refs = listing.get("messages", [])[:max_count]
    logger.info(f"Gmail returned {len(refs)} message id(s)")

    messages: List[MailMessage] = []
    for ref in refs:
        email = _with_backoff(
            lambda: service.users().messages().get(userId="me", id=ref["id"], format="full").execute()
        )
        messages.append(MailMessage(id=email.get("id") or ref["id"], raw_text=email_to_text(email)))
    return messages


class GmailMailSource:
    """Reads a user's inbox with the Google tokens stored at sign-in."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def _credentials(self, user_id: int) -> Credentials:
        async with self.session_factory() as db:
            account = (
                await db.execute(select(MailAccount).where(MailAccount.user_id == user_id))
            ).scalar_one_or_none()
            if account is None:
                raise MailAuthError("No Google account connected. Sign in with Google to enable sync.")
            if not account.refresh_token and needs_refresh(account):
                raise MailAuthError("Gmail token expired and no refresh token stored. Sign in with Google again.")

            creds = build_credentials(account)
            if needs_refresh(account):
                logger.info(f"Refreshing Gmail access token for user {user_id}")
                try:
                    await asyncio.to_thread(creds.refresh, Request())
                except RefreshError as e:
                    raise MailAuthError("Failed to refresh Gmail access token. Sign in with Google again.") from e
                account.access_token = creds.token
                account.expires_at = creds.expiry
                if creds.refresh_token:
                    account.refresh_token = creds.refresh_token
                await db.commit()
            return creds

    async def fetch(self, user_id: int, max_count: int, only_unread: bool) -> List[MailMessage]:
        creds = await self._credentials(user_id)
        logger.info(f"Fetching Gmail messages for user {user_id}: max={max_count} only_unread={only_unread}")
        try:
            return await asyncio.to_thread(fetch_messages_blocking, creds, max_count, only_unread)
        except HttpError as e:
            if e.resp.status in (401, 403):
                raise MailAuthError(f"Gmail rejected the stored credentials ({e.resp.status})") from e
            raise MailFetchError(f"Failed to fetch Gmail emails: {e}") from e
        except RefreshError as e:
            raise MailAuthError("Failed to refresh Gmail access token. Sign in with Google again.") from e
        except OSError as e:
            raise MailFetchError(f"Failed to reach Gmail: {e}") from e
