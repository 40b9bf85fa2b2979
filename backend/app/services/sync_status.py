"""Per-user sync progress kept in the cache (read by GET /api/sync/status and SSE).

The entry expires after SYNC_STATUS_TTL_S regardless of job state. A run that dies
without finalizing leaves isProcessing=true until the TTL runs out; admission is
blocked for that user until then.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from ..schemas import SyncStatus
from .cache import CacheBackend, CacheKeys, decode_cached

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_status(raw: Optional[str]) -> Optional[SyncStatus]:
    """Parse a stored status; None when absent or unusable."""
    if raw is None:
        return None
    try:
        return SyncStatus.model_validate(decode_cached(raw))
    except ValueError:
        return None


def _encode_status(status: SyncStatus) -> str:
    return status.model_dump_json(by_alias=True)


class SyncStatusStore:
    """Read / merge / admit operations over one status key per user."""

    def __init__(self, backend: CacheBackend, ttl_s: Optional[int] = None):
        self.backend = backend
        self.ttl_s = int(ttl_s if ttl_s is not None else settings.sync_status_ttl_s)

    async def read(self, user_id: int) -> SyncStatus:
        """Current status; a zeroed default when the entry is missing, expired or corrupted."""
        key = CacheKeys.sync_status(user_id)
        raw = await self.backend.get(key)
        status = _decode_status(raw)
        if status is None:
            if raw is not None:
                logger.warning(f"Corrupted sync status for user {user_id}, clearing")
                await self.backend.delete(key)
            return SyncStatus()
        return status

    async def merge(self, user_id: int, **fields) -> SyncStatus:
        """
        Overlay fields onto the current status and write it back with a fresh TTL.

        last_sync is stamped only when is_processing flips from true to false here.
        """
        current = await self.read(user_id)
        data = current.model_dump()
        data.update(fields)
        if fields.get("is_processing") is False and current.is_processing:
            data["last_sync"] = utcnow()
        updated = SyncStatus.model_validate(data)
        await self.backend.set(CacheKeys.sync_status(user_id), _encode_status(updated), self.ttl_s)
        return updated

    async def write(self, user_id: int, status: SyncStatus) -> SyncStatus:
        """Store the full status with a fresh TTL, without reading the old entry."""
        await self.backend.set(CacheKeys.sync_status(user_id), _encode_status(status), self.ttl_s)
        return status

    async def try_begin(self, user_id: int, initial: SyncStatus) -> bool:
        """
        Claim the user's sync slot.

        Writes initial (keeping the previous last_sync) only if no run is marked as
        processing. The check and the write happen as one compare-and-set, so of two
        concurrent callers exactly one wins.
        """
        def _claim(raw: Optional[str]) -> Optional[str]:
            previous = _decode_status(raw)
            if previous is not None and previous.is_processing:
                return None
            claimed = initial.model_copy(
                update={"last_sync": previous.last_sync if previous else initial.last_sync}
            )
            return _encode_status(claimed)

        return await self.backend.compare_and_set(CacheKeys.sync_status(user_id), _claim, self.ttl_s)

    async def clear(self, user_id: int) -> None:
        await self.backend.delete(CacheKeys.sync_status(user_id))
