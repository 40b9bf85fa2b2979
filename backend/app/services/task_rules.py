"""Validation, fingerprinting and persistence rules for tasks extracted from email."""
import hashlib
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Task
from ..schemas import TaskCandidate

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 4
DEFAULT_PRIORITY = 2

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    """Naive UTC, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def fingerprint(message_id: str, length: int = 32) -> str:
    """Stable identity of a source email: truncated SHA-256 of the normalized message id."""
    normalized = (message_id or "").strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[: max(8, length)]


def clamp_priority(value: Any) -> int:
    """Coerce an extractor priority into [1, 4]; unusable values become medium (2)."""
    if isinstance(value, bool):
        return DEFAULT_PRIORITY
    try:
        p = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, p))


def parse_deadline(value: Any, now: datetime) -> Optional[datetime]:
    """
    Parse an extractor deadline into naive UTC.

    Returns None when the value is missing, unparsable, or strictly before now.
    A bare date (YYYY-MM-DD) means the end of that day.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time(23, 59, 59))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            if _DATE_ONLY.match(text):
                parsed = datetime.combine(date.fromisoformat(text), time(23, 59, 59))
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Invalid deadline format: {text[:40]!r}")
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if parsed < now:
        return None
    return parsed


def _clean_links(links: Any) -> list[str]:
    if not isinstance(links, list):
        return []
    out = []
    for link in links:
        if isinstance(link, str) and link.strip():
            out.append(link.strip()[:2000])
    return out


def build_task_row(
    candidate: TaskCandidate,
    user_id: int,
    source_fingerprint: str,
    now: datetime,
) -> dict:
    """Turn one extractor candidate into a tasks-table row for bulk insert."""
    return {
        "user_id": user_id,
        "title": (candidate.title or "").strip()[:255],
        "details": (candidate.details or "")[:10000],
        "priority": clamp_priority(candidate.priority),
        "deadline": parse_deadline(candidate.deadline, now),
        "task_type": candidate.task_type,
        "company": (candidate.company or None) and candidate.company[:255],
        "role": (candidate.role or None) and candidate.role[:255],
        "links": _clean_links(candidate.links),
        "status": "todo",
        "source_fingerprint": source_fingerprint,
        "created_at": now,
    }


async def has_recent_task(
    db: AsyncSession,
    user_id: int,
    source_fingerprint: str,
    window_days: int,
    now: datetime,
) -> bool:
    """True if this user already has a task from the same email created within the window."""
    window_start = now - timedelta(days=window_days)
    result = await db.execute(
        select(Task.id)
        .where(
            Task.user_id == user_id,
            Task.source_fingerprint == source_fingerprint,
            Task.created_at >= window_start,
        )
        .limit(1)
    )
    return result.first() is not None


async def bulk_create_tasks(db: AsyncSession, rows: list[dict]) -> int:
    """
    Insert all rows in one statement, skipping rows that hit a unique constraint.

    Returns the number of rows actually inserted. Caller commits.
    """
    if not rows:
        return 0
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = pg_insert
    elif dialect == "sqlite":
        insert_fn = sqlite_insert
    else:
        raise RuntimeError(f"Bulk insert with skip-on-duplicate is not supported on {dialect}")
    stmt = insert_fn(Task).values(rows).on_conflict_do_nothing().returning(Task.id)
    result = await db.execute(stmt)
    inserted = len(result.scalars().all())
    if inserted < len(rows):
        logger.info(f"Skipped {len(rows) - inserted} duplicate task(s) on insert")
    return inserted
