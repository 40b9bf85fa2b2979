"""
Client-side view of sync progress.

One SyncSubscriptionManager per client session holds the last known SyncStatus and
fans it out to subscribers, so several consumers share a single polling loop.
"""
import asyncio
import logging
from typing import Callable, List, Optional

import httpx

from .config import settings
from .schemas import SyncStatus

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/sync/status"
SYNC_PATH = "/api/gmail/sync"

Listener = Callable[[SyncStatus], None]


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, str) and detail:
        return detail
    return f"Sync failed ({response.status_code})"


class SyncSubscriptionManager:
    """Shared, observable sync status backed by the HTTP API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        poll_interval_s: Optional[float] = None,
        retry_interval_s: Optional[float] = None,
    ):
        self.http = http
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.poll_interval_s
        self.retry_interval_s = retry_interval_s if retry_interval_s is not None else settings.poll_retry_interval_s
        self._status = SyncStatus()
        self._listeners: List[Listener] = []
        self._stop = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def current_status(self) -> SyncStatus:
        return self._status

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register callback and call it right away with the cached status."""
        self._listeners.append(callback)
        callback(self._status)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception as e:
                logger.warning(f"Sync status listener failed: {e}")

    def _set(self, status: SyncStatus) -> None:
        self._status = status
        self._notify()

    def _merge(self, **fields) -> None:
        self._set(self._status.model_copy(update=fields))

    async def _fetch_status(self) -> SyncStatus:
        response = await self.http.get(STATUS_PATH)
        response.raise_for_status()
        return SyncStatus.model_validate(response.json())

    async def check_status(self) -> SyncStatus:
        """One status read; on failure the cached value is kept."""
        try:
            self._set(await self._fetch_status())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to check sync status: {e}")
        return self._status

    async def trigger_sync(self, max_emails: Optional[int] = None, only_unread: Optional[bool] = None) -> bool:
        """
        Start a sync unless one is already known to be running.

        Returns True once the server accepted the request and polling has started.
        """
        if self._status.is_processing:
            logger.info("Sync already in progress")
            return False

        self._merge(
            is_processing=True,
            progress=0,
            current_step="starting sync",
            total_emails=0,
            processed_emails=0,
            emails_failed=0,
            tasks_created=0,
            error=None,
        )

        body = {}
        if max_emails is not None:
            body["maxEmails"] = max_emails
        if only_unread is not None:
            body["onlyUnread"] = only_unread

        try:
            response = await self.http.post(SYNC_PATH, json=body)
        except httpx.HTTPError as e:
            self._merge(is_processing=False, error=str(e) or "Sync failed")
            return False
        if not response.is_success:
            self._merge(is_processing=False, error=_error_detail(response))
            return False

        self._start_polling()
        return True

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        self._stop.clear()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _sleep(self, delay: float) -> bool:
        """Sleep up to delay seconds; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                status = await self._fetch_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500 or not self._status.is_processing:
                    logger.warning(f"Stopping sync polling: {e}")
                    # Release the local guard so trigger_sync can reach the server again
                    self._merge(is_processing=False, error=_error_detail(e.response))
                    break
                logger.warning(f"Polling error, retrying in {self.retry_interval_s}s: {e}")
                delay = self.retry_interval_s
            except (httpx.TransportError, ValueError) as e:
                if not self._status.is_processing:
                    break
                logger.warning(f"Polling error, retrying in {self.retry_interval_s}s: {e}")
                delay = self.retry_interval_s
            else:
                self._set(status)
                if not status.is_processing:
                    break
                delay = self.poll_interval_s

            if await self._sleep(delay):
                break

    def stop(self) -> None:
        self._stop.set()

    async def wait(self) -> SyncStatus:
        """Wait for the polling loop to finish; returns the last known status."""
        if self._poll_task is not None:
            await self._poll_task
        return self._status

    async def aclose(self) -> None:
        self.stop()
        await self.wait()
