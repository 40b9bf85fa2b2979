"""
In-process email sync: admission, batched extraction, dedup, bulk persist, progress.

A run is an asyncio task inside the API process that accepted POST /api/gmail/sync.
Its only observable output besides created tasks is the per-user SyncStatus entry in
the cache, which the status endpoint, the SSE stream and the client poller read.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional

from ..config import Settings, settings
from ..database import AsyncSessionLocal
from ..gmail_service import GmailMailSource, MailMessage, MailSource
from ..schemas import SyncStartRequest, SyncStatus
from ..task_extractor import LLMTaskExtractor
from .cache import CacheService, get_cache_backend
from .sync_status import SyncStatusStore, utcnow as status_utcnow
from .task_rules import (
    build_task_row,
    bulk_create_tasks,
    fingerprint,
    has_recent_task,
    utcnow,
)

logger = logging.getLogger(__name__)

PROGRESS_FETCHING = 10
PROGRESS_ANALYZING = 20
PROGRESS_ANALYZED = 80
PROGRESS_SAVING = 85
PROGRESS_DONE = 100


@dataclass
class SyncOptions:
    max_emails: int = 10
    only_unread: bool = True

    @classmethod
    def from_request(cls, body: Optional[SyncStartRequest], config: Settings = settings) -> "SyncOptions":
        max_emails = config.sync_default_max_emails
        only_unread = True
        if body is not None:
            if body.max_emails is not None:
                max_emails = body.max_emails
            if body.only_unread is not None:
                only_unread = body.only_unread
        max_emails = max(1, min(int(max_emails), int(config.sync_max_emails_limit)))
        return cls(max_emails=max_emails, only_unread=only_unread)


def _chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def batch_progress(done: int, total: int) -> int:
    """Linear 20..80 over the analyzing phase."""
    if total <= 0:
        return PROGRESS_ANALYZED
    span = PROGRESS_ANALYZED - PROGRESS_ANALYZING
    return PROGRESS_ANALYZING + (span * min(done, total)) // total


class _RunStatus:
    """One run's own copy of its status; every update writes the whole record."""

    def __init__(self, store: SyncStatusStore, user_id: int, status: SyncStatus):
        self.store = store
        self.user_id = user_id
        self.status = status

    async def update(self, **fields) -> SyncStatus:
        self.status = self.status.model_copy(update=fields)
        return await self.store.write(self.user_id, self.status)

    async def finish(self, **fields) -> SyncStatus:
        return await self.update(is_processing=False, last_sync=status_utcnow(), **fields)


class SyncOrchestrator:
    """Owns the sync state machine for every user in this process."""

    def __init__(
        self,
        status_store: SyncStatusStore,
        mail_source: MailSource,
        extractor,
        session_factory=AsyncSessionLocal,
        cache: Optional[CacheService] = None,
        config: Settings = settings,
    ):
        self.status_store = status_store
        self.mail_source = mail_source
        self.extractor = extractor
        self.session_factory = session_factory
        self.cache = cache
        self.config = config
        self._runs: Dict[int, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def start_sync(self, user_id: int, options: SyncOptions) -> bool:
        """
        Claim the user's sync slot and spawn the run.

        Returns False (and leaves the status untouched) when a run is already marked
        as processing. Returns True as soon as the run is scheduled.
        """
        initial = SyncStatus(
            is_processing=True,
            progress=0,
            current_step="connecting",
            total_emails=0,
            processed_emails=0,
            emails_failed=0,
            tasks_created=0,
            error=None,
        )
        if not await self.status_store.try_begin(user_id, initial):
            logger.info(f"Sync already in progress for user {user_id}; rejecting")
            return False

        # Carry the previous lastSync, which try_begin kept in the claimed entry
        claimed = await self.status_store.read(user_id)
        initial = initial.model_copy(update={"last_sync": claimed.last_sync})

        task = asyncio.create_task(self.run(user_id, options, initial), name=f"email-sync-user-{user_id}")
        self._runs[user_id] = task
        task.add_done_callback(partial(self._on_run_done, user_id))
        logger.info(
            f"Sync started for user {user_id}: max_emails={options.max_emails} only_unread={options.only_unread}"
        )
        return True

    def _on_run_done(self, user_id: int, task: asyncio.Task) -> None:
        if self._runs.get(user_id) is task:
            del self._runs[user_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Sync task for user {user_id} exited with an unhandled error: {exc!r}")

    def is_running(self, user_id: int) -> bool:
        task = self._runs.get(user_id)
        return task is not None and not task.done()

    async def wait(self, user_id: int) -> None:
        """Block until the user's current run (if any) has finished."""
        task = self._runs.get(user_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Cancel in-flight runs; each is finalized as failed before it exits."""
        tasks = [t for t in self._runs.values() if not t.done()]
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} in-flight sync run(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self, user_id: int, options: SyncOptions, initial: Optional[SyncStatus] = None
    ) -> Optional[SyncStatus]:
        """
        Execute one sync run. Never raises except on cancellation.

        The run publishes its own snapshot on every step rather than merging into the
        cached entry, so an entry that expired mid-run is rewritten in full.
        """
        started = time.monotonic()
        if initial is None:
            initial = SyncStatus(is_processing=True, current_step="connecting")
        run_status = _RunStatus(self.status_store, user_id, initial)
        try:
            status = await self._run_steps(run_status, options)
        except asyncio.CancelledError:
            await self._fail(run_status, "Sync cancelled")
            raise
        except Exception as e:
            logger.exception(f"Sync failed for user {user_id}: {e}")
            return await self._fail(run_status, str(e) or type(e).__name__)
        logger.info(
            f"Sync finished for user {user_id} in {time.monotonic() - started:.1f}s: "
            f"step={status.current_step} processed={status.processed_emails} "
            f"failed={status.emails_failed} created={status.tasks_created}"
        )
        return status

    async def _fail(self, run_status: _RunStatus, message: str) -> Optional[SyncStatus]:
        # progress and tasks_created keep their last values
        try:
            return await run_status.finish(current_step="failed", error=message)
        except Exception as e:
            logger.error(f"Could not record sync failure for user {run_status.user_id}: {e}")
            return None

    async def _run_steps(self, run_status: _RunStatus, options: SyncOptions) -> SyncStatus:
        user_id = run_status.user_id

        await run_status.update(current_step="fetching", progress=PROGRESS_FETCHING)
        messages = await self.mail_source.fetch(user_id, options.max_emails, options.only_unread)
        if not messages:
            logger.info(f"No new emails to process for user {user_id}")
            return await run_status.finish(
                progress=PROGRESS_DONE,
                current_step="no new emails",
                tasks_created=0,
                error=None,
            )

        total = len(messages)
        await run_status.update(current_step="analyzing", progress=PROGRESS_ANALYZING, total_emails=total)
        logger.info(f"Processing {total} email(s) for user {user_id}")

        pending_rows: List[dict] = []
        processed = 0
        failed = 0
        progress = PROGRESS_ANALYZING
        batches = _chunk_list(messages, int(self.config.sync_batch_size))

        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self._process_message(user_id, message) for message in batch),
                return_exceptions=True,
            )
            for message, result in zip(batch, results):
                if isinstance(result, Exception):
                    failed += 1
                    logger.error(f"Failed to process email {message.id} for user {user_id}: {result}")
                elif isinstance(result, BaseException):
                    raise result
                else:
                    processed += 1
                    pending_rows.extend(result)

            done = processed + failed
            progress = max(progress, batch_progress(done, total))
            await run_status.update(
                processed_emails=processed,
                emails_failed=failed,
                progress=progress,
                current_step=f"analyzing ({done}/{total})",
            )
            logger.info(f"Batch {index + 1}/{len(batches)} done for user {user_id}: {done}/{total} emails")

            if index < len(batches) - 1 and self.config.sync_batch_pause_s > 0:
                await asyncio.sleep(self.config.sync_batch_pause_s)

        await run_status.update(current_step="saving", progress=PROGRESS_SAVING)
        created = await self._save(pending_rows)
        if self.cache is not None:
            await self.cache.clear_user_cache(user_id)

        return await run_status.finish(
            progress=PROGRESS_DONE,
            current_step="completed",
            processed_emails=processed,
            emails_failed=failed,
            tasks_created=created,
            error=None,
        )

    async def _process_message(self, user_id: int, message: MailMessage) -> List[dict]:
        """Rows to insert for one message; [] for duplicates and non-actionable mail."""
        fp = fingerprint(message.id, self.config.fingerprint_length)
        now = utcnow()
        # AsyncSession is not safe for concurrent use, so each message gets its own.
        async with self.session_factory() as db:
            if await has_recent_task(db, user_id, fp, self.config.dedup_window_days, now):
                logger.debug(f"Email {message.id}: already has tasks, skipping")
                return []

        analysis = await self.extractor.extract(message.raw_text)
        if not analysis.is_actionable or not analysis.tasks:
            return []
        return [build_task_row(candidate, user_id, fp, now) for candidate in analysis.tasks]

    async def _save(self, rows: List[dict]) -> int:
        if not rows:
            return 0
        async with self.session_factory() as db:
            created = await bulk_create_tasks(db, rows)
            await db.commit()
        return created


_orchestrator: Optional[SyncOrchestrator] = None


def get_sync_orchestrator() -> SyncOrchestrator:
    """FastAPI dependency: process-wide orchestrator with Gmail + OpenAI wiring."""
    global _orchestrator
    if _orchestrator is None:
        backend = get_cache_backend()
        _orchestrator = SyncOrchestrator(
            status_store=SyncStatusStore(backend),
            mail_source=GmailMailSource(),
            extractor=LLMTaskExtractor(),
            session_factory=AsyncSessionLocal,
            cache=CacheService(backend),
        )
    return _orchestrator


async def shutdown_sync_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None
