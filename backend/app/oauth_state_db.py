"""OAuth CSRF state persisted in DB for Google sign-in."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import OAuthState

OAUTH_STATE_TTL_SECONDS = 900  # 15 minutes (avoids invalid_state when slow or callback retried)

KIND_GOOGLE_LOGIN = "google_login"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _expired(row: OAuthState, now: datetime) -> bool:
    return (now - row.created_at).total_seconds() > OAUTH_STATE_TTL_SECONDS


async def oauth_state_set(
    db: AsyncSession, kind: str, state_token: str, redirect_url: Optional[str] = None
) -> None:
    """Store OAuth state token. Overwrites if exists."""
    now = _utcnow()
    row = await db.get(OAuthState, state_token)
    if row:
        row.kind = kind
        row.redirect_url = redirect_url or ""
        row.created_at = now
    else:
        db.add(OAuthState(state_token=state_token, kind=kind, redirect_url=redirect_url or "", created_at=now))
    await db.commit()


async def oauth_state_consume(db: AsyncSession, state_token: str, kind: str = KIND_GOOGLE_LOGIN) -> Optional[dict]:
    """
    Look up state, validate kind and TTL, delete row, return payload or None.
    Returns {"redirect_url": str, "created_at": datetime} if valid.
    """
    row = await db.get(OAuthState, state_token)
    if not row:
        return None
    payload = None
    if row.kind == kind and not _expired(row, _utcnow()):
        payload = {"redirect_url": row.redirect_url or "", "created_at": row.created_at}
    await db.delete(row)
    await db.commit()
    return payload


async def oauth_state_cleanup_expired(db: AsyncSession) -> int:
    """Delete expired state rows; returns how many were removed."""
    now = _utcnow()
    rows = (await db.execute(select(OAuthState))).scalars().all()
    stale = [r.state_token for r in rows if _expired(r, now)]
    if stale:
        await db.execute(delete(OAuthState).where(OAuthState.state_token.in_(stale)))
        await db.commit()
    return len(stale)
